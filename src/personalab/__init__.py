"""PersonaLab: persona editing with a tool-using agent and live state sync."""

__version__ = "0.1.0"

__all__ = ["__version__"]
