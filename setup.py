from setuptools import setup, find_namespace_packages

setup(
    name='fleetgate',
    version='0.1.0',
    description='Cluster provisioning and single-entry-point access controller',
    package_dir={'': 'src'},
    packages=find_namespace_packages(where='src', include=['fleetgate*']),
    python_requires='>=3.10',
    install_requires=[
        'typer>=0.9',
        'pydantic>=2.0',
        'pyyaml',
        'rich',
        'hvac',
        'requests',
    ],
    extras_require={
        'test': [
            'pytest>=7.4',
        ],
    },
    entry_points={
        'console_scripts': [
            'fleetgate = fleetgate.cli:run',
        ],
    },
)
