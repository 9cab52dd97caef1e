"""Extract GGUF model metadata as a JSON object."""

__version__ = "0.1.0"
