"""pycall daemon module.

Provides the RPyC-based daemon that keeps a Python interpreter alive between
calls, and the client-side registry that manages it.

Key Components:
- CallDaemonService: RPyC service executing call units
- start_daemon: Server startup with port binding as atomic lock
- ServerRegistry: Client-side start/dispatch/shutdown of daemons by port
"""
