from setuptools import setup, find_packages

setup(
    name="nano-seq",
    version="0.1.0",
    description="Sequence wrapper for explicit forward/backward step modules, with a LabelMe patch dataset",
    author="lastweek",
    packages=find_packages(include=["nanoseq", "nanoseq.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.4.0",
        "numpy>=1.24.0",
        "tqdm>=4.66.0",
        "Pillow>=10.0.0",
    ],
    extras_require={
        "dev": ["pytest>=7.4.0"],
    },
)
