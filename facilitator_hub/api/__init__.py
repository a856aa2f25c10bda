"""
HTTP API for Facilitator Hub
"""
