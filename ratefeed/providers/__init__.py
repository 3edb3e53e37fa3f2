"""
Funder implementations.

Importing this package registers every portal client with the
ProviderRegistry. Ratebook parsers are also available for offline
imports, including Venus and ALD, which have no portal client. A
ratebook of unknown origin can be handed to ``detect_ratebook_parser``.
"""

from typing import Dict, Type, Union

from ratefeed.core.importer import RateParser
from ratefeed.core.schema import ProviderCode

from .lex import LexClient, LexRatebookParser
from .ogilvie import ExportConfig, OgilvieClient, OgilvieRatebookParser
from .drivalia import DrivaliaClient, parse_application_response
from .fleet_marque import FleetMarqueClient, ScrapeConfig, parse_derivatives
from .venus import VenusRatebookParser
from .ald import AldRatebookParser
from .detect import FormatDetection, RatebookLayout, detect_format, detect_ratebook_parser

RATEBOOK_PARSERS: Dict[ProviderCode, Type[RateParser]] = {
    ProviderCode.LEX: LexRatebookParser,
    ProviderCode.OGILVIE: OgilvieRatebookParser,
    ProviderCode.VENUS: VenusRatebookParser,
    ProviderCode.ALD: AldRatebookParser,
}


def get_ratebook_parser(provider: Union[ProviderCode, str]) -> RateParser:
    """
    Parser instance for a provider's ratebook files.

    Raises:
        ValueError: provider has no ratebook format
    """
    code = ProviderCode(provider)
    if code not in RATEBOOK_PARSERS:
        raise ValueError(f"No ratebook parser for provider: {code.value}")
    return RATEBOOK_PARSERS[code]()


__all__ = [
    # Portal clients
    "LexClient",
    "OgilvieClient",
    "DrivaliaClient",
    "FleetMarqueClient",
    # Run parameters
    "ExportConfig",
    "ScrapeConfig",
    # Ratebook parsers
    "LexRatebookParser",
    "OgilvieRatebookParser",
    "VenusRatebookParser",
    "AldRatebookParser",
    "RATEBOOK_PARSERS",
    "get_ratebook_parser",
    # Format detection
    "FormatDetection",
    "RatebookLayout",
    "detect_format",
    "detect_ratebook_parser",
    # Pure response parsers
    "parse_application_response",
    "parse_derivatives",
]
