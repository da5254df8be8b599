"""
FastAPI routers, one module per API area.
"""
