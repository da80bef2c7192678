from setuptools import setup, find_packages
from pathlib import Path


def read_readme():
    this_directory = Path(__file__).parent
    readme_file = this_directory / 'README.md'
    if readme_file.exists():
        return readme_file.read_text(encoding='utf-8')
    return ""

def get_version():
    import re
    init_file = Path(__file__).parent / 'gcprunner' / '__init__.py'
    if init_file.exists():
        content = init_file.read_text()
        match = re.search(r'__version__\s*=\s*["\']([^"\']+)["\']', content)
        if match:
            return match.group(1)
    return "0.3.0"


setup(
    name="gcprunner",
    version=get_version(),
    description="Run containerized tasks on Google Cloud Batch and Cloud Run with Cloud Storage staging.",
    long_description=read_readme(),
    long_description_content_type='text/markdown',
    packages=find_packages(include=['gcprunner', 'gcprunner.*']),
    python_requires=">=3.11",
    install_requires=[
        'pydantic>=2.5',
        'jinja2>=3.1',
        'PyYAML>=6.0',
        'typer>=0.9',
        'google-auth>=2.23',
        'google-api-core>=2.15',
        'googleapis-common-protos>=1.60',
        'protobuf>=4.21',
        'google-cloud-storage>=2.14',
        'google-cloud-logging>=3.9',
        'google-cloud-batch>=0.17',
        'google-cloud-run>=0.10',
    ],
    extras_require={
        'test': [
            'pytest>=7.4',
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Distributed Computing",
    ],
    keywords="gcp batch cloud-run containers gcs orchestration",
    entry_points={
        'console_scripts': [
            'gcprunner=gcprunner.cli:app',
        ],
    },
)
