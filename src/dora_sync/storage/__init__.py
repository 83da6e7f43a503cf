"""Relational storage: table definitions (``tables``) and the unit-of-work store (``store``)."""
