"""
Background queue consumption for grade sync jobs.
"""
