from setuptools import setup, find_packages

setup(
    name="layered_context_engine",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "pydantic>=2.0",
        "pydantic-settings>=2.0",
        "python-dotenv",
        "aiofiles>=23.1",
        "aiosqlite",
        "aiohttp",
        "litellm",
        "opentelemetry-api",
        "opentelemetry-sdk",
        "opentelemetry-exporter-otlp-proto-http",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "pytest-mock",
        ],
    },
    entry_points={
        "console_scripts": [
            "layered-context=host.main:main",
        ],
    },
    python_requires=">=3.9",
)
