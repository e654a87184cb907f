"""
relaychat — streaming chat client for OpenRouter-hosted and relayed models.
"""

__version__ = "0.1.0"
