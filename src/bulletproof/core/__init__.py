"""Core connection orchestration.

This package contains the components behind a tunnel session:
- External engine supervision (tunnel and TUN engines)
- The local SOCKS5 relay and the upstream SOCKS5 dialer
- Candidate search for a working engine configuration
- Provider variants and the session manager
- Host integration (system proxy, PAC, device identity)
- Exception handling

The core package is usable on its own; the command-line interface only wires
settings, providers and the manager together.
"""
