"""autotrade — consensus-driven automated trading pipeline."""

__version__ = "0.1.0"
