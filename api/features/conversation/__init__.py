"""Conversation feature package: models, repositories, and the turn ledger.

This package records every query turn of a conversation. Conversations are
created by an external collaborator; the ledger only appends messages and
keeps the running counters consistent. Storage is PostgreSQL via simple SQL
(no ORM entities), with an in-memory repository for local runs and tests.
"""
