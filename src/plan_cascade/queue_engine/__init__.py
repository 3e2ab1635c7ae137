"""Fingerprint-gated queue mutation engine.

``fingerprint`` derives the optimistic-concurrency token, ``engine`` applies
typed operations to a queue snapshot, ``parse`` turns untyped JSON into those
operations, and ``store`` persists the result with an audit trail.
"""
