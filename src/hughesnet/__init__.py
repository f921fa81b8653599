"""HughesNet order harvesting and trip synthesis engine.

Entry point is ``src.hughesnet.service.HughesNetService``; the modules
underneath are usable on their own (``parser.parse_order_page``,
``harvester.extract_ids``, ``auth.extract_cookie``).
"""
