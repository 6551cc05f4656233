"""
dgrelay: a WebSocket relay between browser clients and a live transcription service.
"""

__version__ = "0.1.0"
