from setuptools import setup, find_packages

setup(
    name="novel-engine",
    version="0.1.0",
    packages=find_packages(include=["novel_engine", "novel_engine.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.3",
        "pyyaml>=6.0.1",
        "rich>=13.7.0",
        "loguru>=0.7.2",
    ],
    extras_require={
        "anthropic": ["anthropic>=0.34.0"],
        "openai": ["openai>=1.40.0"],
        "gemini": ["google-genai>=0.3.0"],
        "all": [
            "anthropic>=0.34.0",
            "openai>=1.40.0",
            "google-genai>=0.3.0",
        ],
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "novel-engine=novel_engine.cli:main",
        ],
    },
    python_requires=">=3.10",
)
