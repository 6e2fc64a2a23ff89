"""Fact Engine - Services"""
