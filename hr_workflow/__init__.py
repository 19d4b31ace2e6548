"""
HR Workflow Engine

Multi-level approval workflows, approval chain resolution and
deadline escalation for an HR back office.
"""

__version__ = "1.0.0"
