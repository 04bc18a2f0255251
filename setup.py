from setuptools import setup, find_packages


setup(
    name="sanitizer-guard",
    version="1.0.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "PyYAML==6.0.2",
    ],
    author="Sanitizer Team",
    description="Placeholder substitution hooks that keep real infrastructure values away from AI coding assistants",
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "sanitizer=sanitizer.cli:main",
        ],
    },
)
