from setuptools import setup, find_packages

setup(
    name="vmf-staking",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=[
        "loguru>=0.7.0",
        "pydantic>=2.0.0",
        "Click>=8.0",
        "aiohttp>=3.8.0",
        "web3>=6.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "vmf-staking=vmf_staking.main:cli",
        ],
    },
    python_requires=">=3.9",
    author="VMF Staking Team",
    description="Stake VMF tokens and track yield on Base from the command line",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
    ],
)
