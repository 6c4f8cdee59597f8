"""Deployment operator: planning, publishing, controller and shell bridge.

Package name uses 'deploy_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
