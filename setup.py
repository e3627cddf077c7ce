"""Setup configuration for drive-upload-engine package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
readme_file = Path(__file__).parent / "README.md"
long_description = (
    readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""
)

setup(
    name="drive-upload-engine",
    version="1.0.0",
    description="Quick-upload deduplication, chunked object-storage transfer and TTL caches for a cloud drive",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Tony Sebion",
    packages=find_packages(exclude=["tests", "tests.*", "docs", "docs.*"]),
    python_requires=">=3.8",
    install_requires=[
        "boto3>=1.36.0",
        "botocore>=1.36.0",  # request_checksum_calculation config option
        "p115cipher",  # ECDH channel for quick-upload negotiation
        "pydantic>=2.5.0",  # Typed, range-checked settings
        "pydantic-settings>=2.0.0",  # DRIVE_UPLOAD_ environment settings
        "python-dotenv>=1.0.0",
        "pyyaml>=6.0",
        "requests>=2.28.0",
        "requests-toolbelt>=1.0.0",  # Streaming multipart form uploads
        "tenacity>=8.0.0",  # For retry logic
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "moto[s3]>=5.0.0",
            "black>=22.0.0",
            "flake8>=5.0.0",
            "mypy>=0.990",
        ],
        "test": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "moto[s3]>=5.0.0",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: System :: Archiving :: Backup",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    keywords="cloud-drive upload deduplication object-storage multipart s3 cache",
)
