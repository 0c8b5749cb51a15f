"""Setup configuration for crawlqueue."""

from setuptools import setup, find_packages

setup(
    name="crawlqueue",
    version="1.0.0",
    description="Work queue for crawl items with atomic claiming",
    author="Your Name",
    packages=find_packages(include=["crawlqueue", "crawlqueue.*"]),
    install_requires=[
        "click>=8.1.7",
        "loguru>=0.7.2",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
    entry_points={
        "console_scripts": [
            "crawlqueue=crawlqueue.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
