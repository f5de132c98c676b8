"""CV Chat API: answers questions about a résumé with conversational memory."""

__version__ = "0.1.0"
