"""agent-connect REST API package.

Sub-modules expose FastAPI routers:
- connections: connect / callback / status / disconnect / invoke
"""
