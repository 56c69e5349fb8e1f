from .driver import BrowserError, DrivenBrowser, ElementWaitTimeout, PlaywrightBrowser
from .selectors import SiteSelectors

__all__ = [
    "DrivenBrowser",
    "PlaywrightBrowser",
    "BrowserError",
    "ElementWaitTimeout",
    "SiteSelectors",
]
