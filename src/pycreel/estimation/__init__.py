"""
Estimation engine: replicate weights, variance, and the creel estimators.

The public entry points are re-exported from :mod:`pycreel`.
"""
