"""
Engines: pipeline script execution (Python, RestrictedPython).
"""
