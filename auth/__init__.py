"""auth/ -- Session, verification and route-guard core for the job portal client.

Layer rule: auth/models.py, auth/store.py and auth/guard.py import only stdlib,
third-party libraries and each other. The flows (session.py, verification.py)
also use api/ for transport; api/ imports auth/store.py and nothing else from auth/.
"""
