"""
Setup script for Conversion Job Orchestrator

The job and worker scheduling core of a Java-mod to Bedrock-addon converter:
priority queueing, an auto-scaling worker pool, resource admission control,
retries and stalled-worker recovery.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Conversion Job Orchestrator

    The job and worker scheduling core of a Java-mod to Bedrock-addon converter,
    with priority queueing, capability-routed workers, resource admission control,
    retry with backoff and recovery from stalled workers.
    """

setup(
    name="conversion-job-orchestrator",
    version="1.0.0",
    description="Job and worker scheduling core for Java-mod to Bedrock-addon conversion",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Conversion Job Orchestrator Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Framework :: AsyncIO",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    keywords="job scheduling, worker pool, asyncio, minecraft, conversion",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    python_requires=">=3.10",
    install_requires=[
        # Core dependencies
        "click>=8.0.0",
        "psutil>=5.8.0",

        # Additional async
        "aiofiles>=23.1.0",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",

        # Monitoring
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "conversion-orchestrator=conversion_job_orchestrator.cli.main:main",
            "cjo=conversion_job_orchestrator.cli.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "conversion_job_orchestrator": [
            "config/*.yaml",
        ],
    },
)
