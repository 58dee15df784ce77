"""Setup script for the PlanGraph package."""

from setuptools import setup, find_packages

setup(
    name="plangraph",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    install_requires=[
        "alembic>=1.13",
        "asyncpg>=0.29",
        "fastapi>=0.110",
        "httpx>=0.27",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "prometheus-client>=0.20",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "redis>=5.0.1",
        "sqlalchemy>=2.0",
        "structlog>=24.1",
        "uvicorn>=0.29",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    description="PlanGraph - Hierarchical agent orchestration engine",
    author="PlanGraph Team",
)
