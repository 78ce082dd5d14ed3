"""Mirror and lighting product configurator: option filtering, rules and SKU codes."""

__version__ = "1.0.0"
