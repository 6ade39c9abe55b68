"""Data-model-driven ORM.

Provides the database connector, schema synchronisation, CRUD data layer,
query builder, object model and data series.
"""
