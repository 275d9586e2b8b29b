"""Agent execution engine: a bounded ReAct loop with tools, memory, approvals and usage metering."""

__version__ = "0.1.0"
