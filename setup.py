from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="CodaMomentMag",
    version="1.0.0",
    author= "Arham Zakki Edelo",
    author_email= "edelo.arham@gmail.com",
    description= "Calibrate coda envelope amplitudes and estimate moment magnitude over station networks",
    long_description= long_description,
    long_description_content_type="text/markdown",
    url = "https://github.com/bgjx/CodaMomentMag",
    license="MIT",
    keywords='Seismology, Moment Magnitude, Coda Calibration, Site Correction',
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    package_data={"CodaMomentMag": ["config.ini"]},
    include_package_data=True,
    install_requires=[
        "numpy>=1.23.0",
        "pandas>=1.5.0",
        "matplotlib>=3.6.0",
        "scipy>=1.9.0",
        "obspy>=1.4.0",
        "tqdm>=4.64.0",
        "configparser>=5.2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "CodaMwCalc = CodaMomentMag.main:main",
        ]
    },
    python_requires = ">=3.8",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
)
