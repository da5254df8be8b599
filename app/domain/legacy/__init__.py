"""
Legacy archive migration.

Analyses zip exports from an older ERP, proposes a target table per file and
imports the confirmed files in dependency order with legacy id resolution.
"""
