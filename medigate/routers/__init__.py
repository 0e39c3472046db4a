# API Routers - Medigate
# Users, admin session control and health probes

from medigate.routers import admin, health, users

__all__ = ["admin", "health", "users"]
