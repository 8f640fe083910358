from setuptools import setup, find_packages

setup(
    name='doksctl',
    version='0.1.0',
    packages=find_packages(),
    include_package_data=True,
    package_data={
        'doksctl': ['gpu_configs/*.yaml'],
    },
    install_requires=[
        'typer',
        'kubernetes',
        'pyyaml',
        'pydantic>=2',
        'python-dotenv',
        'jsonschema',
        'rich',
    ],
    extras_require={
        'test': [
            'pytest',
        ],
    },
    entry_points={
        'console_scripts': [
            'doksctl=doksctl.cli:run'
        ]
    },
    description='Idempotent GPU cluster setup for DigitalOcean Kubernetes with LLM-D deployment',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.8',
)
