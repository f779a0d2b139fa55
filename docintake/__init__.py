"""Client-side intake of receipts and invoices into structured financial records."""
