"""Knowledge relay: captcha-gated retrieval-augmented chat over HTTP."""

__version__ = "0.3.0"
