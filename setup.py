from setuptools import setup, find_packages


setup(
    name="xp3",
    version="0.1",
    packages=find_packages(include=["xp3", "xp3.*"]),
    description="Reader and writer for XP3 game-engine archives.",
    author="vercingetorx",
    python_requires=">=3.8",
    install_requires=[],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "xp3=xp3.cli:main",
        ]
    },
)
