from review_exchange.repositories.assignments import InMemoryAssignmentsRepository, PostgresAssignmentsRepository
from review_exchange.repositories.ledger_entries import (
    InMemoryLedgerEntriesRepository,
    PostgresLedgerEntriesRepository,
)
from review_exchange.repositories.relationships import (
    InMemoryRelationshipsRepository,
    PostgresRelationshipsRepository,
)

__all__ = [
    "InMemoryAssignmentsRepository",
    "PostgresAssignmentsRepository",
    "InMemoryLedgerEntriesRepository",
    "PostgresLedgerEntriesRepository",
    "InMemoryRelationshipsRepository",
    "PostgresRelationshipsRepository",
]
