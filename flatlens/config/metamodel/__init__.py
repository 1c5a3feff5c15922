#!/usr/bin/env python

"""metamodel.__init__.py:
    The metamodel defines the available attributes and their valid values a flatlens simulation configuration can have.
"""

DEFAULT_NotAValue = -123456789
