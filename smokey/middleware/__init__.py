"""Request middleware: logging, timing, bearer-token auth."""
