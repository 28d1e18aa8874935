"""
Background jobs for Pledge Hub.

Jobs:
- session_lifecycle: Close expired sessions and execute the ones due at session end
"""
