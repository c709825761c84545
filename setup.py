from setuptools import setup, find_namespace_packages

setup(
    name="npa-provisioner",
    version="0.1.0",
    description="npa-provisioner — deploy and register Netskope Private Access publishers on AWS",
    author="npa-provisioner",
    python_requires=">=3.9",
    packages=find_namespace_packages(include=["provisioner", "provisioner.*", "connectors", "connectors.*"]),
    py_modules=["npa_provisioner"],
    install_requires=[
        "pyyaml>=6.0",
        "boto3>=1.34.0",
        "requests>=2.31.0",
    ],
    extras_require={
        "dev": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "npa-provisioner=npa_provisioner:main",
        ],
    },
)
