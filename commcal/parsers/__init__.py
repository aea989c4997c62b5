# Parsers are registered explicitly, in dispatch order, in commcal.parsers.registry.
