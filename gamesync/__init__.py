"""Cloud save synchronization for a multi-service game launcher"""

__version__ = "0.3.1"
