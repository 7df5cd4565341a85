"""
FHIRBridge: Multi-vendor EHR connector framework

A uniform async client over heterogeneous EHR vendor FHIR APIs with
token lifecycle management, bounded auth retry and a PHI-free audit trail.
"""

__version__ = "0.1.0"
__author__ = "FHIRBridge Team"
