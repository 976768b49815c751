"""Order automation engine: order templates, flow generation, and trigger evaluation."""

__version__ = "0.1.0"
