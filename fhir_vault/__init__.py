"""FHIR-Vault: a versioned FHIR Patient store.

Every write produces a new immutable version; the full history of each
resource stays readable after updates and soft deletes.
"""

__version__ = "1.0.0"
