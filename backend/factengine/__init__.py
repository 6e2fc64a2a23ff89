"""Fact Engine - deterministic fact snapshots and drift-aware explanation cache"""
__version__ = "1.0.0"
