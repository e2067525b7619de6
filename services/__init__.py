"""
Flow Gateway Services

- credentials: Flow credential pool (load, hot reload, refresh, selection)
- transport: Flow API client
- generation: image / video generation orchestrator and stream chunks
"""
