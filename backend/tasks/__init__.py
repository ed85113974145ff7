# tasks/__init__.py
# ============================================================================
# COMMERCE BACKEND — BACKGROUND TASKS
# ============================================================================
