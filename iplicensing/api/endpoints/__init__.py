"""
API endpoint modules

Routers are imported lazily by main.py so that one broken module does not
take the whole API down. Import directly from the specific module when needed:
    from iplicensing.api.endpoints.auth import router as auth_router
"""
