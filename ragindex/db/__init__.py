# =============================================================================
# Database Package — async engine for the pgvector backend
# =============================================================================
