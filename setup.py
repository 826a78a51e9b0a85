import sys
import traceback
from setuptools import find_packages, setup

def get_packages():
    """Get package list with debug information."""
    try:
        packages = find_packages(exclude=["tests", "tests.*"])
        print(f"Found packages: {packages}")
        return packages
    except Exception as e:
        print(f"Error finding packages: {e}")
        print(f"Traceback:\n{traceback.format_exc()}")
        return []

try:
    print(f"Python version: {sys.version}")

    setup(
        name="agentdeck",
        version="0.1.0",
        description="Durable agent conversations, streaming turns and reusable checkpoints",
        packages=get_packages(),
        package_dir={"": "."},
        include_package_data=True,  # Include non-Python files
        package_data={"agentdeck": ["config.yml"]},
        install_requires=[
            # Web Framework
            "fastapi>=0.68.0",
            "uvicorn>=0.15.0",
            # Core Dependencies
            "tenacity>=8.0.1",
            "pydantic>=1.8.2",
            "python-dotenv>=0.19.0",
            "pyyaml>=6.0",
            # Utils
            "rich>=10.0.0",
            "typer>=0.4.0",
        ],
        extras_require={
            "test": [
                "pytest>=6.0.0",
                "pytest-asyncio>=0.21.0",
                "httpx>=0.24.0",
            ],
        },
        python_requires=">=3.9",
        entry_points={
            "console_scripts": [
                "agentdeck=agentdeck.cli.cli:app",
                "agentdeck-web=agentdeck.web.server:main",
            ],
        },
    )
except Exception as e:
    print(f"Setup failed: {e}")
    print(f"Traceback:\n{traceback.format_exc()}")
    raise
