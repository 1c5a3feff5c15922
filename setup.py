import setuptools


with open("README.md", "r") as fh:
    long_description = fh.read()


setuptools.setup(
    name='flatlens',
    version='0.1',
    packages=[
        'flatlens',
        'flatlens.config', 'flatlens.config.etc', 'flatlens.config.metamodel', 'flatlens.config.validator',
        'flatlens.core', 'flatlens.core.cg', 'flatlens.core.QE',
        'flatlens.sims',
    ],
    description='Flat-sky CMB lensing datasets: forward models, log-densities, mixing and preconditioners',
    install_requires=[
        'numpy',
        'scipy',
        'logdecorator',
        'psutil',
        'attrs',
    ],
    extras_require={
        'camb': ['camb'],
        'test': ['pytest'],
    },
    long_description=long_description,
    long_description_content_type='text/markdown',
)
