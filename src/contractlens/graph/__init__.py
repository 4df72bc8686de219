"""Hybrid graph data model, builder and node features."""
