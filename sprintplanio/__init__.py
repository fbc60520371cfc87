"""Sprint Planio: planning-poker rooms kept in sync across participants."""
