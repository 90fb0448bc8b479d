"""
Callos functions - webhook relay, payload assembly and CRM adapters.
"""
__version__ = "1.0.0"
