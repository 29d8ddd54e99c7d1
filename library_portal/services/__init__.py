"""Library Portal - Services Package

This package contains service modules for external integrations:
- Hosted backend REST client (http_client)
- Hosted authentication provider (auth_service)
"""
