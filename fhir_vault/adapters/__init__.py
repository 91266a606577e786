"""Adapters layer for FHIR-Vault.

Adapters implement the Port interfaces defined in the domain layer against
concrete storage substrates.
"""
