import os

from setuptools import find_packages, setup


# read the version from the VERSION file
def get_version():
    with open(os.path.join(os.path.dirname(__file__), "VERSION"), "r") as version_file:
        return version_file.read().strip()


# Set the version in the kubestack/version.py file
def set_version_constant(version: str):
    with open(
        os.path.join(os.path.dirname(__file__), "kubestack-core", "kubestack", "version.py"), "w"
    ) as version_file:
        version_file.write(f'__version__ = "{version}"\n')


version = get_version()
set_version_constant(version)

setup(
    name="kubestack",
    version=version,
    description="Orchestration of CloudFormation stack lifecycles for EKS clusters",
    license="Apache-2.0",
    python_requires=">=3.10",
    package_dir={"": "kubestack-core"},
    packages=find_packages("kubestack-core"),
    install_requires=[
        "boto3>=1.34",
        "botocore>=1.34",
        "pydantic>=2",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "moto[cloudformation]>=5",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Topic :: System :: Systems Administration",
    ],
)
