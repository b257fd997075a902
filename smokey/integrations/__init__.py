"""smokey.integrations: outbound tool gateway.

All tool invocations (audit, burnt, crimson, midnight) go through
``tool_gateway.ToolGateway``; services never call ``requests`` directly.
Every call is bounded by a timeout, and a timeout is reported as a tool
failure rather than an engine fault.
"""
