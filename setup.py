"""Setup script for the GiftLedger stored-value card service."""

from setuptools import setup, find_packages

setup(
    name="giftledger",
    version="0.1.0",
    description="Stored-value card ledger with an authenticated API gateway and webhook/email delivery",
    author="GiftLedger",
    python_requires=">=3.10",
    packages=find_packages(include=["giftledger", "giftledger.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "giftledger-scheduler=giftledger.workers.scheduler:main",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
