"""
Domain Services

Import from the concrete modules (``session_manager``, ``message_pipeline``,
``tenant_service`` ...). The session manager pulls in most of the others, so
nothing is re-exported here.
"""
