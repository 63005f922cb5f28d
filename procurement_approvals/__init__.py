"""
Procurement Approvals

Multi-step approval workflow engine for procurement entities: template
selection, role-gated step routing, SLA deadlines and escalation.
"""

__version__ = "1.0.0"
