"""
AuthGuard application package.

Wires configuration, the credential cache, the circuit breaker and the
mTLS client into a single fetch, and prints the result in the
credential-process format.
"""
