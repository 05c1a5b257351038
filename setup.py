from setuptools import find_packages, setup

setup(
    name="ci-pool",
    version="0.1.0",
    packages=find_packages(
        include=[
            "pool_common",
            "pool_common.*",
            "pool_persistence",
            "pool_persistence.*",
            "pool_controller",
            "pool_controller.*",
            "pool_admin",
            "pool_admin.*",
        ]
    ),
    install_requires=[
        "aiosqlite>=0.19.0",
        "click>=8.1.0",
        "psutil>=5.9.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-xdist>=3.3.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pool-controller=pool_controller.__main__:main",
            "pool-admin=pool_admin.cli:cli",
        ],
    },
    python_requires=">=3.11",
)
