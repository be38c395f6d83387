"""WebSocket message frames, options, authentication, server, connections and client."""