"""Backend subprocess core: translation, process lifecycle, streaming."""
