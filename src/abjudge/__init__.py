"""A/B test scheduling and evaluation engine for published marketing creatives."""

__version__ = "0.1.0"
