"""
Service layer for the availability feature.

Modules expose a service class plus a module-level singleton named after
the module (``prompt_service.prompt_service`` and so on); import them from
their modules directly.
"""
