"""Deployment configuration for the OEE production dashboard.

Only the Supabase naming map lives here for now; see
:mod:`config.supabase_schema`.
"""
