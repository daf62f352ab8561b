# The rest of the package imports python-ldap through this module so that
# python-ldap-faker can patch ``initialize`` on it in our tests.
import ldap
from ldap import *  # noqa: F403
from ldap import dn, modlist  # noqa: F401

__version__ = ldap.__version__
