from __future__ import annotations

from pathlib import Path

from setuptools import find_packages, setup

# Read README for long description
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

setup(
    # Package metadata
    name="subtrack",
    version="1.0.0",
    author="Justin Koufopoulos",
    author_email="justin@example.com",  # Update this
    description="Subscription tracking from billing email and card transactions",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/subtrack",  # Update this
    # Package discovery
    packages=find_packages(exclude=["tests", "tests.*"]),
    package_data={"subtrack": ["data/*.yaml"]},
    # Dependencies
    install_requires=[
        "fastapi>=0.104.1",
        "uvicorn>=0.24.0",
        "pydantic>=2.5.0",
        "google-cloud-aiplatform>=1.38.0",
        "python-dotenv>=1.0.0",
        "tenacity>=8.2.0",
        "cachetools>=5.3.0",
        "pyyaml>=6.0",
        "google-api-python-client>=2.100.0",
        "google-auth>=2.23.0",
        "requests>=2.31.0",
        "beautifulsoup4>=4.12.0",
        "python-dateutil>=2.8.2",
    ],
    # Optional dependencies (for development)
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "httpx>=0.25.0",
            "black>=23.0.0",
            "mypy>=1.0.0",
            "ruff>=0.1.0",
        ],
        # API-key Gemini backend when Vertex AI is not configured
        "genai": [
            "google-generativeai>=0.3.0",
        ],
    },
    # CLI commands
    entry_points={
        "console_scripts": [
            "subtrack-api=subtrack.api:main",
        ],
    },
    # Python version requirement
    python_requires=">=3.11",
    # PyPI classifiers
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
