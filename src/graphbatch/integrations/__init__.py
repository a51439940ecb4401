"""
External integrations: Graph API transport, credential-rotating client and Slack alerts.
"""
