"""
Setup script for voicecards-sync.

voicecards schedules spaced-repetition reviews for flashcards and keeps
review progress in step with Anki:

1. Study sessions - one card at a time, fetch -> reveal -> grade (SM-2)
2. Anki reconciliation - import decks, export progress, merge both ways
3. Auto-sync - periodic background merge for opted-in users

The 'voicecards' command is the entry point.
"""

from setuptools import find_packages, setup

setup(
    name="voicecards-sync",
    version="0.3.0",
    description="Spaced-repetition study sessions with bidirectional Anki sync",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    author="VoiceCards",
    packages=find_packages(include=["voicecards", "voicecards.*"]),
    python_requires=">=3.11",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # HTTP
        "httpx>=0.25.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "aiosqlite>=0.19.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "voicecards=voicecards.cli.main:run",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
        "Topic :: Education :: Computer Aided Instruction (CAI)",
    ],
    keywords="learning spaced-repetition flashcards anki sm2",
)
