"""
Realtime package.

- presence: who is online, through which connections
- rooms: per-connection outbound queues and room multicast
- membership: cached conversation participant sets
- session: per-socket lifecycle and event handlers
- hub: lifecycle-scoped owner that wires the above together
"""
