"""
Integration test modules

Tests for external system integrations including:
- E-signature providers
- Template rendering and letter delivery services
"""
