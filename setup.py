"""Setup script for the chat log anonymizer worker."""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="chatlog-anonymizer",
    version="1.0.0",
    description="Folder-watching worker that strips PII from chat logs via Presidio and delivers them over HTTP",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["chatlog_anonymizer", "chatlog_anonymizer.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Security",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=[
        "httpx>=0.25.0",
        "pydantic>=2.0.0",
        "fastapi>=0.100.0",
        "uvicorn>=0.23.0",
        "python-dotenv>=1.0.0",
        "orjson>=3.9.0",
        "regex>=2023.0.0",
        "tenacity>=8.2.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "chatlog-anonymizer=chatlog_anonymizer.__main__:main",
        ],
    },
)
