"""
Setup configuration for Facilitator Hub
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="facilitator-hub",
    version="0.1.0",
    author="Facilitator Hub Team",
    description="Gasless x402 settlement of ERC-3009 authorizations across EVM networks",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["facilitator_hub", "facilitator_hub.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.109.0",
        "uvicorn[standard]>=0.27.0",
        "pydantic>=2.5.3",
        "pydantic-settings>=2.1.0",
        "httpx>=0.26.0",
        "web3>=7.0.0",
        "eth-account>=0.13.0",
        "hexbytes>=1.2.0",
        "structlog>=24.1.0",
        "python-dotenv>=1.0.0",
        "rich>=13.7.0",
        "upstash-redis>=1.0.0",
        "cryptography>=42.0.0",
        "slowapi>=0.1.9",
    ],
    extras_require={
        "tests": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "factory-boy>=3.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "hub=facilitator_hub.cli.hub_cli:main",
        ],
    },
)
