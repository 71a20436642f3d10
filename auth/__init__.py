"""auth/ -- Authentication, sessions and account activation.

Layer rule: auth/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/, catalog/, ged/, or mail/.
api/ imports from auth/, not the other way around.
"""
