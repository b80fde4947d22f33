from setuptools import setup, find_packages

setup(
    name="cellview-state",
    version="0.1.0",
    author="Zachary Stensland",
    author_email="zach.stensland@ucsf.edu",
    description="View and field state engine for single-cell AnnData exploration",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.8",
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "anndata",
        "matplotlib",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
