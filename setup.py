from setuptools import setup, find_packages

setup(
    name="flowscript",
    version="0.1.0",
    description="FlowScript: a control-flow DSL compiler and concurrent execution engine",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "lark",
        "pydantic>=2.0",
        "networkx>=3.0",
        "loguru>=0.7",
        "opentelemetry-api",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "flowscript=flowscript.cli:main",
        ],
    },
    python_requires=">=3.9",
)
