"""
Inbound webhook endpoints: call control and asynchronous events.
"""
