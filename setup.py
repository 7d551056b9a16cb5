from setuptools import setup, find_packages


setup(
    name='torch_dcg',
    version='0.1.0',
    packages=find_packages(include=['torch_dcg', 'torch_dcg.*']),
    install_requires=[
        'torch>=2.0.0',
        'safetensors>=0.3.0'
    ],
    extras_require={
        'test':['pytest','numpy','scipy']
    }
)
