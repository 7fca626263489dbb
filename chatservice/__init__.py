"""
chatservice — token-budgeted conversations with streamed LLM replies.
"""

__version__ = "0.1.0"
