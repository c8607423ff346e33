"""auth/ -- Accounts, sessions and password reset for EstateHub.

Layer rule: auth/ imports stdlib, third-party libraries and core/ (clock,
mailer). It does NOT import from api/. api/ wires the services together and
exposes them over HTTP; auth/ knows nothing about routes.
"""
