"""FHIR REST API for FHIR-Vault.

FastAPI transport over the Mutation and Query engines.
"""
