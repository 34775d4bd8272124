"""Setup file for development installation."""

from setuptools import setup, find_namespace_packages

setup(
    name="chat-context-manager",
    version="0.1.0",
    description="Conversation history and context-window management for LLM chat",
    packages=find_namespace_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.1",
        "fastapi>=0.110",
        "prometheus-client>=0.19",
        "opentelemetry-instrumentation-fastapi>=0.44b0",
        "google-generativeai>=0.5",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
)
