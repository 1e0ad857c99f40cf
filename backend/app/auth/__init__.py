"""Authentication module (accounts, credentials, sessions).

Services:
    - UserDirectory: account records, profile edits and presence fields.
    - PasswordCredentialVerifier: email + password to user ID.
    - SessionManager: opaque bearer session tokens.
"""
