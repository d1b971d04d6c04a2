"""Setup configuration for AgentHub."""

from setuptools import setup, find_packages

# Read the README file
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="agenthub",
    version="1.0.0",
    author="AgentHub Team",
    description="AgentHub - tool-calling agent orchestration with an MCP endpoint",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(where="src", exclude=["tests", "tests.*"]),
    package_dir={"": "src"},
    py_modules=["main"],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Application Frameworks",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=[
        # Core web framework
        "fastapi>=0.109.0",
        "uvicorn[standard]>=0.25.0",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        # Cache
        "aiocache>=0.12.0",
        # HTTP/Async
        "httpx>=0.25.0",
        # Auth/Security
        "python-jose[cryptography]>=3.3.0",
        # Utilities
        "Jinja2>=3.1.0",
        "jsonschema>=4.20.0",
        "json-repair>=0.25.0",
        "pdfplumber>=0.10.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.5.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "agenthub=main:main",
        ],
    },
    keywords=[
        "ai",
        "agents",
        "orchestration",
        "fastapi",
        "mcp",
        "tool-calling",
    ],
)
