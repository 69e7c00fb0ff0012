"""
TASKGATE identity constants.
"""

__codename__ = "TASKGATE"
__tagline__ = "Plan it. Gate it. Run it."
__version__ = "0.4.0"

BANNER = r"""
 _____ _   ___ _  _____ ___ _ _____ ___
|_   _/_\ / __| |/ / __|/_\ |_   _| __|
  | |/ _ \\__ \ ' < (_ |/ _ \ | | | _|
  |_/_/ \_\___/_|\_\___/_/ \_\|_| |___|
"""
