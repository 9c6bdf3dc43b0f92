"""Transport bindings: stdio, HTTP and WebSocket."""
