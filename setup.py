# setup.py
from setuptools import setup, find_packages

setup(
    name="obligation-tracker",
    version="0.1.0",
    description="Recurring obligation scheduler and forecast engine for a personal ledger",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "click>=7.0",
        "pyyaml>=5.3",
        "python-dotenv>=0.19",
        "anyio>=3.0",
        "mcp>=1.0,<2",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "obligations=obligation_tracker.cli:main",
            "obligations-mcp=obligation_tracker.mcp_server:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
