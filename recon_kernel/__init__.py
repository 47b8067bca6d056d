"""
Reconciliation Kernel

Domain types, errors, logging and persistence shared by the statement
reconciliation engine:
- Immutable statement, record, match and discrepancy value objects
- Decimal-only money handling
- Hash-chained audit entries
- Append-only persistence with ORM immutability guards
"""

__version__ = "0.1.0"
