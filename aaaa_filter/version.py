# aaaa_filter/version.py
__version__ = "1.0.0"
__author__ = "AAAA Filter Team"
