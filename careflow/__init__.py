"""careflow: workflow automation and change propagation for a multi-tenant hospital record system."""

__version__ = "0.1.0"
