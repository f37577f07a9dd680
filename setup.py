from setuptools import find_packages, setup

setup(
    name="preview-orchestrator",
    version="0.1.0",
    description="Provisions, supervises and reclaims short-lived preview containers on Fly Machines",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.10",
    install_requires=[
        "httpx>=0.24.0",
        "structlog>=23.0.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "prometheus-client>=0.17.0",
        "psutil>=5.9.0",
        "fastapi>=0.100.0",
        "uvicorn>=0.23.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.11.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "preview-orchestrator=preview_orchestrator.__main__:main",
        ],
    },
)
