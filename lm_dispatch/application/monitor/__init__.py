from .dispatch import AgentDispatcher, format_summary

__all__ = ["AgentDispatcher", "format_summary"]
