"""
Filing Workflow Engine

Staged Ltd Accounts and VAT filing workflows for an accounting practice,
with registry reconciliation and atomic period rollover.
"""

__version__ = "1.0.0"
