"""
tickbot - asyncio trading client for digit-class contracts on a streaming
tick service.
"""

__version__ = "0.1.0"
