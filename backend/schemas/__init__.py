# schemas/__init__.py
# ============================================================================
# COMMERCE BACKEND — DOMAIN SCHEMAS
# ============================================================================
