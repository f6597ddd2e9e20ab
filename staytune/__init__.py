"""staytune - continuous fine-tuning pipeline for multi-tenant hotel assistants."""

__version__ = "0.1.0"
