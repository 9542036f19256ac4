"""
Integration modules for the HR letters service

Contains adapters and clients for external systems:
- E-signature providers (DocuSign, Digio, eMudhra)
- Template rendering service (letter files)
- Delivery service (email / WhatsApp dispatch of issued letters)
"""
