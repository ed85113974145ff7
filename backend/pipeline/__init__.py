# pipeline/__init__.py
# ============================================================================
# COMMERCE BACKEND — PAYMENT PIPELINE
# ============================================================================
# Provider adapters -> reconciliation engine -> lifecycle guard -> gateway
# ============================================================================
