"""
Setup configuration for the AWS IoT test client.
"""
from setuptools import setup, find_packages
import os

def read_requirements():
    """Read requirements from requirements.txt"""
    if os.path.exists('requirements.txt'):
        with open('requirements.txt', 'r') as f:
            return [line.strip() for line in f if line.strip() and not line.startswith('#')]
    return []

def read_readme():
    """Read README file"""
    if os.path.exists('README.md'):
        with open('README.md', 'r', encoding='utf-8') as f:
            return f.read()
    return "AWS IoT test client - interactive MQTT over TLS test harness"

setup(
    name="aws-iot-tester",
    version="1.0.0",
    author="IoT Team",
    description="Interactive MQTT over TLS test client for AWS IoT Core",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=read_requirements(),
    extras_require={
        'test': [
            'pytest>=7.0',
            'pytest-asyncio>=0.21',
            'cryptography>=41.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'aws-iot-tester=aws_iot_tester.tester_cli:main',
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Networking",
        "Topic :: Communications",
    ],
    python_requires=">=3.8",
    keywords="mqtt iot aws tls cli",
)
