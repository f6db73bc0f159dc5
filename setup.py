# Package installation script

from setuptools import setup, find_namespace_packages

setup(
    name="edge_gateway",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["edge_gateway*"]),
    package_dir={"": "src"},
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "edge_gateway=edge_gateway.__main__:main",
        ],
    },
    install_requires=[
        "fastapi",
        "hypercorn",
        "pyyaml",
        "aiosqlite",
        "pydantic>=2",
        "minimalmodbus",
        "pyserial",
        "aiohttp",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
