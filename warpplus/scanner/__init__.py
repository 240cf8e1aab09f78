"""Probing WARP endpoints with a WireGuard handshake initiation."""