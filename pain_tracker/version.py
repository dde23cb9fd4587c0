"""Pain Tracker Vault Meta information.
   Encrypted local vault for the pain tracker's client-persisted state.
"""
__title__ = 'pain_tracker'
__description__ = (
   'Passphrase-derived encrypted local vault for '
   'client-persisted pain tracker state.'
)
__version__ = '3.0.0'
__author__ = 'Pain Tracker Team'
__license__ = 'MIT'
