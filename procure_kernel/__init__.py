"""
Procure Kernel

Purchase requisition approval workflow backed by a budget reservation ledger:
- Ordered, role-based approval chains with rejection and clarification
- Budget reservations that never overdraw a budget code
- Optimistic versioning on every aggregate
- Notifications delivered through a transactional outbox
"""

__version__ = "0.1.0"
