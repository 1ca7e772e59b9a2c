from setuptools import setup, find_packages

setup(
    name='kubeboot',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    install_requires=[
        'typer',
        'fastapi',
        'uvicorn',
        'kubernetes',
        'pydantic>=2',
        'pyyaml',
        'jsonschema',
        'python-dotenv',
        'requests'
    ],
    extras_require={
        'test': [
            'pytest',
            'httpx'
        ]
    },
    entry_points={
        'console_scripts': [
            'kubeboot=kubeboot.cli:app'
        ]
    },
    description='Bootstrap a kubeadm Kubernetes cluster from independently provisioned VMs over a shared file store',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
    python_requires='>=3.8',
)
