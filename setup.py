from setuptools import setup, find_packages

setup(
    name='k8zctl',
    version='0.1.0',
    packages=find_packages(include=['k8zctl', 'k8zctl.*']),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'kubernetes',
        'python-dotenv',
        'requests',
        'urllib3',
        'pyyaml',
        'pydantic>=2',
    ],
    extras_require={
        'test': [
            'pytest',
            'jsonschema',
        ],
    },
    entry_points={
        'console_scripts': [
            'k8zctl=k8zctl.cli:app'
        ]
    },
    author='Your Name',
    description='Provision and upgrade Talos Kubernetes clusters on Hetzner Cloud',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
