from setuptools import setup, find_packages

setup(
    name='petisi',
    version='0.0.1',
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=['numpy',
                      'scipy',
                      'numba',
                      'pandas',
                      'matplotlib',
                      'seaborn'],
    extras_require={'test': ['pytest']},
    entry_points={
        'console_scripts': [
            'petisi-isi-fit = petisi.cli.cli_isi_fitting:main',
            ],
        },
    )
