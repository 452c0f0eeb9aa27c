"""In-process stand-ins for the catalog, tokenizer and payment processor."""
