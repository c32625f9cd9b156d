"""
Setup configuration for crontab-manager package.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

setup(
    name="crontab-manager",
    version="0.1.0",
    description="Manage crontab jobs with embedded metadata, automatic backups and safe transactional edits",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # Package discovery
    packages=find_packages(include=["crontab_manager", "crontab_manager.*"]),

    # Dependencies
    install_requires=[
        "apscheduler>=3.10,<4",
        "python-dotenv>=1.0.0",
    ],

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
        ],
        "test": [
            "pytest>=7.4.0",
        ],
    },

    # Python version requirement
    python_requires=">=3.8",

    # CLI entry points
    entry_points={
        "console_scripts": [
            "crontab-manager=crontab_manager.cli:main",
        ],
    },

    # Classification
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Systems Administration",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],

    # Keywords
    keywords="crontab cron jobs backup scheduler koha",

    # Include package data
    include_package_data=True,
)
