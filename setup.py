from setuptools import setup, find_packages

setup(
    name='k3sctl',
    version='0.1.0',
    packages=find_packages(exclude=['*.tests', '*.tests.*']),
    include_package_data=True,
    package_data={
        'k3sctl': ['manifests/*.yaml'],
    },
    install_requires=[
        'typer',
        'kubernetes',
        'paramiko',
        'pydantic>=2',
        'pyyaml',
        'jsonschema',
        'python-dotenv',
        'requests'
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'k3sctl=k3sctl.cli:app'
        ]
    },
    author='Your Name',
    description='Idempotent multi-node K3s provisioning over SSH with NFS storage and an observability stack',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.9',
)
