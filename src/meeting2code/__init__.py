"""Meeting-to-code pipeline: requirements in, validated deployments out."""

__version__ = "0.1.0"
