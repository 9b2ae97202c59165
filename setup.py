from setuptools import find_packages, setup

# Modules to compile
# Only the pure-Python planning modules; the orchestrator and connections stay
# interpreted so async drivers and SQLAlchemy hooks behave normally.
modules = [
    "bulksync/metadata.py",
    "bulksync/writers/sql_server_writer.py",
    "bulksync/identity.py",
]

# Check if we are in a build environment that supports compilation
# If mypy is not installed, or we explicitly disable it, we skip compilation.
# This allows 'pip install -e .' to work without compiling during dev.
try:
    from mypyc.build import mypycify

    ext_modules = mypycify(modules)
except (ImportError, RuntimeError):
    # Fallback to pure Python if mypyc is not present or fails
    ext_modules = []

setup(
    name="bulksync",
    version="0.1.0",
    description="Set-based bulk insert/update/upsert/delete for SQL Server via staging tables",
    packages=find_packages(include=["bulksync", "bulksync.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0",
        "rich>=13.0",
        "sqlalchemy[asyncio]>=2.0",
    ],
    extras_require={
        "mssql": ["pyodbc>=5.0"],
        "test": ["pytest>=7.0"],
    },
    ext_modules=ext_modules,
)
