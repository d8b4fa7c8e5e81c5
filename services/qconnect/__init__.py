"""
QConnect: conversation and query-session orchestration for a natural-language
to database-query assistant.
"""

__version__ = "0.1.0"
