__version__ = "0.1.0"

GENERATOR_NAME = "specexec"
