"""Setup file for development installation."""

from setuptools import setup, find_packages

setup(
    name="homeservices-chat",
    version="0.1.0",
    description="Real-time chat core for the home-services marketplace client",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "httpx>=0.27",
        "prometheus-client>=0.17",
        "pydantic>=2.5",
        "python-socketio[asyncio-client]>=5.10",
        "structlog>=23.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
)
