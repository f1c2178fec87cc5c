"""
Setup configuration for vault_indexer package.
"""
from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

# Read requirements
requirements_file = Path(__file__).parent / "requirements.txt"
requirements = []
if requirements_file.exists():
    requirements = [
        line.strip()
        for line in requirements_file.read_text().splitlines()
        if line.strip() and not line.startswith("#")
    ]

setup(
    name="vault-indexer",
    version="1.0.0",
    description="Real-time, reorg-aware indexer for ERC-4626 vault events and state",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="DanieleMDiNosse",
    packages=find_packages(exclude=["tests", "tests.*", "scripts"]),
    python_requires=">=3.11",
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "vault-indexer=vault_indexer.core.indexer:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
    ],
)
