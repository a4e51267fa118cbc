"""Setup script for the datalayer package."""

from setuptools import setup, find_namespace_packages

setup(
    name="datalayer",
    version="1.0.0",
    description="Generic repository and unit of work data access layer over SQLAlchemy",
    author="Datalayer Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["datalayer*"]),
    python_requires=">=3.11",
    install_requires=[
        "sqlalchemy>=2.0",
        "fastapi>=0.110",
        "psycopg2-binary",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "httpx",
        ],
        "dev": [
            "black",
            "flake8",
            "mypy",
            "pre-commit",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Topic :: Database",
    ],
)
