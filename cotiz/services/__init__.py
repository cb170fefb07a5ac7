"""
cotiz/services

Thin clients for external systems (email, payment gateway, company registry, AI).

IMPORTANT:
- Clients read their settings from current_app.config at call time.
- Transport failures surface as IntegrationError; missing configuration as ServiceUnavailable.
"""
