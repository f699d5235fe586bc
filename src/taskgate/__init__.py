"""TaskGate - role-gated kanban task lifecycle with a tamper-evident audit trail."""

__version__ = "0.1.0"
