from setuptools import setup, find_packages
setup(
    name="property_tracker",
    version="0.1.0",
    package_dir={"": "src"},
    packages=find_packages("src"),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "fastapi",
        "pydantic>=2",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
    entry_points={
        'console_scripts': [
            'property_tracker=property_tracker.__main__:main'
        ]
    }
)
