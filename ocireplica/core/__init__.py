"""Stores, the graph replication engine and the copy/backup orchestrators."""
