""" validator.__init__.py: The validator module collects functions which are used when validating a flatlens simulation configuration.
"""
