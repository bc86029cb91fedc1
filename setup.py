"""Setup script for lab-integration-engine package following Cosmic Python pattern."""

from setuptools import setup, find_namespace_packages

setup(
    name="lab-integration-engine",
    version="1.0.0",
    description="Laboratory integration engine - HL7v2 and FHIR message exchange with external EMR/LIS systems",
    author="Lab Integration Team",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src", include=["lab_integration*", "shared*"]),
    py_modules=["config"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic>=2",
        "sqlalchemy>=2",
        "psycopg2-binary",
        "redis",
        "requests",
        "python-jose[cryptography]",
        "tenacity",
        "hl7apy",
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
    entry_points={
        "console_scripts": [
            "lab-integration-api=lab_integration.entrypoints.integration_api:main",
            "lab-integration-consumer=lab_integration.entrypoints.redis_eventconsumer:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Healthcare Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Medical Science Apps.",
    ],
)
