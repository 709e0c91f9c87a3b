"""
Test suite for Bayesian dictionary learning.

Validates the closed-form variational updates against the properties they
must satisfy:
- Winn & Bishop (2005) - Variational Message Passing
- Bishop (2006) - Pattern Recognition and Machine Learning, ch. 10
"""
