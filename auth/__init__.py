"""auth/ -- Authentication, credential tokens and authorization for ExamPort.

Layer rule: auth/ imports only stdlib + third-party libraries (fastapi only in
auth/dependencies.py). It does NOT import from api/ or core/.
api/ imports from auth/, not the other way around.
"""
