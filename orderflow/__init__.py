"""
                Restaurant Order Flow

Order lifecycle and claim-locking backend for restaurant kitchen and
service staff, with optimistic concurrency on every order write and
hybrid Mock/Real collaborators for payments and notifications.

Author: Khalil_Bannouri
Version: 4.0.0
License: MIT
"""

__version__ = "4.0.0"
__author__ = "Khalil_Bannouri"
