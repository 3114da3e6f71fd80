from setuptools import setup, find_packages

setup(
    name="benchorch",
    version="0.1.0",
    description="Orchestrates benchmark suites across a pool of local or remote workers",
    packages=find_packages(include=['benchorch', 'benchorch.*']),
    install_requires=[
        'pyyaml>=5.1',
        'pydantic>=2.0',
        'aiohttp>=3.8',
        'fastapi>=0.100',
        'uvicorn>=0.22',
        'click>=8.0',
        'rich>=12.0',
        'psutil>=5.9',
        'numpy>=1.21',
        'pandas>=1.3',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
            'pytest-asyncio>=0.21',
            'httpx>=0.24',
        ],
    },
    entry_points={
        'console_scripts': [
            'benchorch=benchorch.cli:coordinator_main',
            'benchorch-worker=benchorch.worker.cli:worker_main',
        ],
    },
    python_requires='>=3.8',
)
