#!/usr/bin/env python3
"""Setup script for ruff-ai-fix."""

from setuptools import setup

with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="ruff-ai-fix",
    version="1.0.0",
    description="Fix the issues Ruff reports by asking a language model for the corrected file",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=["ruff_ai_fix"],
    python_requires=">=3.9",
    install_requires=[
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ruff-ai-fix=ruff_ai_fix.fixer:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Software Development :: Quality Assurance",
    ],
    keywords="ruff lint fix openai llm",
)
