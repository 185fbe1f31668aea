from setuptools import find_packages, setup

setup(
    name='mosqctl',
    version='1.0.0',
    description='Mosquitto broker manager: config compiler, credential store, bridges and supervisor',
    author='isantolin',
    author_email='',
    packages=find_packages(include=['mosqctl', 'mosqctl.*']),
    python_requires='>=3.11',
    install_requires=[
        'aiomqtt>=2.0',
        'paho-mqtt>=2.0',
        'msgspec',
        'marshmallow>=3.13',
        'tenacity',
        'transitions',
        'cryptography>=42',
        'psutil',
        'uvloop',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-asyncio',
        ],
    },
    entry_points={
        'console_scripts': [
            'mosqctl=mosqctl.daemon:main',
        ],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: POSIX :: Linux',
    ],
)
