"""
Promotion engine - container deployments promoted through acceptance, QA and production
"""
from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="promotion-engine",
    version="0.1.0",
    description="Single-host container deployments and a tag-driven environment promotion workflow",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["core", "core.*", "deployment", "deployment.*", "promotion", "promotion.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: System :: Software Distribution",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "test": ["pytest>=7.4", "pytest-asyncio>=0.21"],
    },
    entry_points={
        "console_scripts": [
            "promote=core.cli:main",
        ],
    },
)
