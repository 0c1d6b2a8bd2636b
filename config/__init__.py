"""Configuration helpers for the Biscuit QC application."""

# Runtime configuration that deployments can adjust without touching the
# application code, such as the Supabase table and column mapping.
