"""
Auth Engine

Session tokens minted by this backend, backed by Sign in with Apple
refresh tokens stored per subject.
"""
