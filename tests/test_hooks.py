import json
import os
import shlex
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml


sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sanitizer.config import MappingStore
from sanitizer.hooks import (
    FILE_EDIT,
    FILE_READ,
    FILE_WRITE,
    SESSION_START,
    SESSION_STOP,
    SHELL_COMMAND,
    TOOL_OUTPUT,
    UNKNOWN,
    Decision,
    HookEngine,
    HookEvent,
    HookRules,
    decode_event,
    encode_response,
)
from sanitizer.lease import MemoryLease


def _envelope(event_name, tool_name="", cwd="", **tool_input):
    return json.dumps({
        "hook_event_name": event_name,
        "tool_name": tool_name,
        "tool_input": tool_input,
        "cwd": cwd,
    })


class DecodeEventTests(unittest.TestCase):
    def test_read_envelope(self):
        event = decode_event(_envelope("PreToolUse", "Read", cwd="/work/app", file_path="/work/app/a.txt"))
        self.assertEqual(event.kind, FILE_READ)
        self.assertEqual(event.path, "/work/app/a.txt")
        self.assertEqual(event.cwd, "/work/app")

    def test_tool_kinds(self):
        self.assertEqual(decode_event(_envelope("PreToolUse", "Write", file_path="a", content="x")).kind, FILE_WRITE)
        self.assertEqual(decode_event(_envelope("PreToolUse", "MultiEdit", file_path="a")).kind, FILE_EDIT)
        self.assertEqual(decode_event(_envelope("PreToolUse", "Bash", command="ls")).kind, SHELL_COMMAND)
        self.assertEqual(decode_event(_envelope("PreToolUse", "WebFetch")).kind, UNKNOWN)

    def test_post_tool_use_falls_back_to_tool_response(self):
        raw = json.dumps({"hook_event_name": "PostToolUse", "tool_name": "Bash", "tool_response": "ok 10.0.0.1"})
        event = decode_event(raw)
        self.assertEqual(event.kind, TOOL_OUTPUT)
        self.assertEqual(event.output, "ok 10.0.0.1")

    def test_malformed_input_raises(self):
        with self.assertRaises(ValueError):
            decode_event("{not json")
        with self.assertRaises(ValueError):
            decode_event("[1, 2]")

    def test_missing_fields_default_to_empty(self):
        event = decode_event('{"hook_event_name": "PreToolUse", "tool_name": "Read", "tool_input": null}')
        self.assertEqual(event.kind, FILE_READ)
        self.assertEqual(event.path, "")
        self.assertEqual(event.tool_input, {})


class HookRulesTests(unittest.TestCase):
    def setUp(self):
        self.rules = HookRules.build(
            "/home/dev/.claude/sanitizer/sanitizer.yaml",
            protected_dirs=("/home/dev/.claude/sanitizer", "/home/dev/.claude/unsanitized"),
            wrapper=("sanitizer",),
        )

    def test_commands_touching_internals_are_blocked(self):
        for command in (
            "cat ~/.claude/sanitizer/sanitizer.yaml",
            "grep 10.0 sanitizer.yaml",
            "ls /home/dev/.claude/unsanitized/app",
            "type C:\\Users\\dev\\.claude\\unsanitized\\app\\a.txt",
            "powershell Get-Content ~/.claude/sanitizer/audit.log",
            "cd ~/.claude; cat sanitizer/sanitizer.yaml>/tmp/x",
            "cd ~/.claude && cp sanitizer/sanitizer.yaml* /tmp",
            "cd ~/.claude && cat<sanitizer/sanitizer.yaml",
            "rm -f sanitizer.yaml.lock",
            "tar czf /tmp/a.tgz ~/.claude/sanitizer>/dev/null",
        ):
            self.assertTrue(self.rules.is_blocked_command(command), command)
        self.assertFalse(self.rules.is_blocked_command("cat README.md"))
        self.assertFalse(self.rules.is_blocked_command("cat mysanitizer.yaml.example"))

    def test_protected_paths(self):
        self.assertTrue(self.rules.is_protected_path("/home/dev/.claude/sanitizer/sanitizer.yaml"))
        self.assertTrue(self.rules.is_protected_path("/home/dev/.claude/sanitizer/sanitizer.yaml.lock"))
        self.assertTrue(self.rules.is_protected_path("C:\\Users\\dev\\.claude\\unsanitized\\app\\x.py"))
        self.assertFalse(self.rules.is_protected_path("/work/app/src/main.py"))

    def test_real_execution_patterns(self):
        for command in ("powershell -File x", "pwsh -c Get-Date", "./deploy.ps1 -Env prod",
                        "& C:\\tools\\run.exe", "ansible-playbook site.yml", "awx jobs list"):
            self.assertTrue(self.rules.needs_real_execution(command), command)
        for command in ("ls -la", "echo powershell", "python ansible.py"):
            self.assertFalse(self.rules.needs_real_execution(command), command)

    def test_wrapped_command_splits_back_to_original(self):
        for original in (
            "ansible-playbook -i hosts site.yml",
            "powershell -Command \"Get-Item 'C:\\Temp'\"",
            "pwsh -c 'it'\"'\"'s here'",
        ):
            wrapped = self.rules.wrap_command(original)
            self.assertEqual(shlex.split(wrapped), ["sanitizer", "exec", original])


class HookEngineTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        base = Path(self._tmp.name).resolve()
        self.home = base / "home"
        self.project = base / "project"
        self.project.mkdir()
        self.sanitizer_dir = self.home / ".claude" / "sanitizer"
        self.shadow = self.home / ".claude" / "unsanitized" / "project"

        env = {"SANITIZER_HOME": str(self.home), "SANITIZER_DIR": str(self.sanitizer_dir)}
        self._env = mock.patch.dict(os.environ, env)
        self._env.start()

        self.store = MappingStore(self.sanitizer_dir / "sanitizer.yaml", lease=MemoryLease())
        self._write_config({
            "hostname_patterns": ["\\.corp\\.local"],
            "mappings_manual": {},
            "mappings_auto": {},
        })
        self.rules = HookRules.build(
            self.store.path,
            protected_dirs=(self.sanitizer_dir, self.home / ".claude" / "unsanitized"),
            wrapper=("sanitizer",),
        )
        self.engine = HookEngine(store=self.store, rules=self.rules)

    def tearDown(self):
        self._env.stop()
        self._tmp.cleanup()

    def _write_config(self, raw):
        self.store.path.parent.mkdir(parents=True, exist_ok=True)
        self.store.path.write_text(yaml.safe_dump(raw), encoding="utf-8")

    def _event(self, kind, **fields):
        fields.setdefault("cwd", str(self.project))
        fields.setdefault("hook_event_name", "PreToolUse")
        return HookEvent(kind=kind, **fields)

    def test_blocked_command_is_denied(self):
        event = self._event(SHELL_COMMAND, command="cat ~/.claude/sanitizer/sanitizer.yaml")
        decision = self.engine.handle(event)
        self.assertEqual(decision.verdict, "deny")

        response = encode_response(decision, event)
        self.assertEqual(response["hookSpecificOutput"]["permissionDecision"], "deny")
        self.assertTrue(response["hookSpecificOutput"]["permissionDecisionReason"])

    def test_real_exec_command_is_wrapped(self):
        original = "ansible-playbook -i inventory site.yml"
        event = self._event(SHELL_COMMAND, command=original, tool_input={"command": original, "timeout": 60})
        decision = self.engine.handle(event)

        self.assertEqual(decision.verdict, "allow")
        self.assertEqual(decision.updated_input["timeout"], 60)
        self.assertEqual(shlex.split(decision.updated_input["command"]), ["sanitizer", "exec", original])
        response = encode_response(decision, event)
        self.assertEqual(response["hookSpecificOutput"]["updatedInput"], decision.updated_input)

    def test_ordinary_command_passes_unchanged(self):
        event = self._event(SHELL_COMMAND, command="ls -la")
        decision = self.engine.handle(event)
        self.assertEqual(decision, Decision.allow())
        self.assertIsNone(encode_response(decision, event))

    def test_protected_file_is_denied(self):
        event = self._event(FILE_READ, path=str(self.store.path))
        self.assertEqual(self.engine.handle(event).verdict, "deny")

    def test_write_content_is_sanitized_and_persisted(self):
        content = "DB_HOST=10.20.30.40\nCACHE=cache01.corp.local\n"
        event = self._event(
            FILE_WRITE,
            path=str(self.project / ".env"),
            content=content,
            tool_input={"file_path": str(self.project / ".env"), "content": content},
        )
        decision = self.engine.handle(event)

        auto = self.store.load().mappings.auto
        self.assertEqual(set(auto), {"10.20.30.40", "cache01.corp.local"})
        self.assertEqual(
            decision.updated_input["content"],
            f"DB_HOST={auto['10.20.30.40']}\nCACHE={auto['cache01.corp.local']}\n",
        )
        self.assertEqual(decision.updated_input["file_path"], str(self.project / ".env"))

    def test_read_sanitizes_in_place_and_mirrors_original(self):
        target = self.project / "conf" / "app.ini"
        target.parent.mkdir()
        target.write_text("server = 10.20.30.40\n", encoding="utf-8")

        decision = self.engine.handle(self._event(FILE_READ, path=str(target)))

        self.assertEqual(decision, Decision.allow())
        placeholder = self.store.load().mappings.auto["10.20.30.40"]
        self.assertEqual(target.read_text(encoding="utf-8"), f"server = {placeholder}\n")
        self.assertEqual(
            (self.shadow / "conf" / "app.ini").read_text(encoding="utf-8"),
            "server = 10.20.30.40\n",
        )

    def test_read_of_clean_file_leaves_no_shadow_copy(self):
        target = self.project / "README.md"
        target.write_text("nothing sensitive\n", encoding="utf-8")
        self.engine.handle(self._event(FILE_READ, path="README.md"))
        self.assertEqual(target.read_text(encoding="utf-8"), "nothing sensitive\n")
        self.assertFalse((self.shadow / "README.md").exists())

    def test_edit_sanitizes_file_and_replacement_text(self):
        target = self.project / "hosts.txt"
        target.write_text("primary 10.20.30.40\n", encoding="utf-8")
        tool_input = {"file_path": str(target), "old_string": "primary", "new_string": "backup 10.99.0.1"}

        decision = self.engine.handle(
            self._event(FILE_EDIT, path=str(target), new_string="backup 10.99.0.1", tool_input=tool_input)
        )

        auto = self.store.load().mappings.auto
        self.assertEqual(decision.updated_input["new_string"], f"backup {auto['10.99.0.1']}")
        self.assertEqual(decision.updated_input["old_string"], "primary")
        self.assertEqual(target.read_text(encoding="utf-8"), f"primary {auto['10.20.30.40']}\n")

    def test_multi_edit_sanitizes_every_replacement(self):
        target = self.project / "hosts.txt"
        target.write_text("primary\nsecondary\n", encoding="utf-8")
        tool_input = {
            "file_path": str(target),
            "edits": [
                {"old_string": "primary", "new_string": "primary 10.99.0.1"},
                {"old_string": "secondary", "new_string": "secondary db02.corp.local", "replace_all": True},
                {"old_string": "tail", "new_string": "nothing sensitive"},
            ],
        }

        decision = self.engine.handle(self._event(FILE_EDIT, path=str(target), tool_input=tool_input))

        auto = self.store.load().mappings.auto
        self.assertEqual(
            decision.updated_input["edits"],
            [
                {"old_string": "primary", "new_string": f"primary {auto['10.99.0.1']}"},
                {"old_string": "secondary", "new_string": f"secondary {auto['db02.corp.local']}",
                 "replace_all": True},
                {"old_string": "tail", "new_string": "nothing sensitive"},
            ],
        )
        self.assertEqual(decision.updated_input["file_path"], str(target))
        self.assertEqual(tool_input["edits"][0]["new_string"], "primary 10.99.0.1")

    def test_multi_edit_without_sensitive_text_is_allowed(self):
        target = self.project / "notes.txt"
        target.write_text("draft\n", encoding="utf-8")
        tool_input = {"file_path": str(target), "edits": [{"old_string": "draft", "new_string": "final"}]}

        decision = self.engine.handle(self._event(FILE_EDIT, path=str(target), tool_input=tool_input))

        self.assertEqual(decision, Decision.allow())

    def test_tool_output_is_replaced(self):
        event = self._event(TOOL_OUTPUT, hook_event_name="PostToolUse", output="PING 10.20.30.40: ok")
        decision = self.engine.handle(event)

        placeholder = self.store.load().mappings.auto["10.20.30.40"]
        self.assertEqual(decision.updated_output, f"PING {placeholder}: ok")
        response = encode_response(decision, event)
        self.assertEqual(response["hookSpecificOutput"]["updatedOutput"], f"PING {placeholder}: ok")

    def test_session_start_shares_one_mapping_across_files(self):
        (self.project / "a.txt").write_text("gw 10.1.1.1\n", encoding="utf-8")
        (self.project / "b.txt").write_text("gw 10.1.1.1 db db01.corp.local 10.2.2.2\n", encoding="utf-8")
        (self.project / "blob.bin").write_bytes(b"\x0010.1.1.1")
        (self.project / ".git").mkdir()
        (self.project / ".git" / "config").write_text("url = 10.1.1.1\n", encoding="utf-8")

        decision = self.engine.handle(self._event(SESSION_START, hook_event_name="SessionStart"))

        self.assertEqual(decision, Decision.allow())
        auto = self.store.load().mappings.auto
        self.assertEqual(set(auto), {"10.1.1.1", "10.2.2.2", "db01.corp.local"})
        self.assertEqual(len(set(auto.values())), 3)
        self.assertEqual((self.project / "a.txt").read_text(encoding="utf-8"), f"gw {auto['10.1.1.1']}\n")
        self.assertEqual(
            (self.project / "b.txt").read_text(encoding="utf-8"),
            f"gw {auto['10.1.1.1']} db {auto['db01.corp.local']} {auto['10.2.2.2']}\n",
        )
        self.assertEqual((self.project / "blob.bin").read_bytes(), b"\x0010.1.1.1")
        self.assertEqual((self.project / ".git" / "config").read_text(encoding="utf-8"), "url = 10.1.1.1\n")

    def test_session_stop_restores_real_values_in_shadow(self):
        self._write_config({"mappings_auto": {"10.1.1.1": "111.7.7.7"}})
        (self.project / "app.conf").write_text("host=111.7.7.7\n", encoding="utf-8")

        decision = self.engine.handle(self._event(SESSION_STOP, hook_event_name="Stop"))

        self.assertEqual(decision, Decision.allow())
        self.assertEqual((self.shadow / "app.conf").read_text(encoding="utf-8"), "host=10.1.1.1\n")
        self.assertEqual((self.project / "app.conf").read_text(encoding="utf-8"), "host=111.7.7.7\n")

    def test_internal_failure_becomes_error_decision(self):
        self.store.path.write_text("- not\n- a mapping\n", encoding="utf-8")
        (self.project / "a.txt").write_text("10.1.1.1", encoding="utf-8")

        decision = self.engine.handle(self._event(FILE_READ, path=str(self.project / "a.txt")))

        self.assertEqual(decision.verdict, "error")
        self.assertIsNone(encode_response(decision, self._event(FILE_READ)))
        self.assertEqual((self.project / "a.txt").read_text(encoding="utf-8"), "10.1.1.1")

    def test_unknown_event_is_allowed(self):
        self.assertEqual(self.engine.handle(self._event(UNKNOWN)), Decision.allow())

    def test_default_rules_protect_shadow_tree(self):
        engine = HookEngine(store=self.store)
        config = self.store.load()
        rules = engine.rules_for(config, self.project)
        self.assertTrue(rules.is_protected_path(str(self.shadow / "app.conf")))
        self.assertTrue(rules.is_protected_path(str(self.store.path)))
        self.assertFalse(rules.is_protected_path(str(self.project / "app.conf")))


if __name__ == "__main__":
    unittest.main()
