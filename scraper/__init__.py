"""
Guild Monitor Scraper

Responsibilities:
- Interval scheduling of the scraping tasks (APScheduler), single flight per task
- Fetching game-site pages with per-target request spacing and a cookie jar (httpx)
- Extracting typed records from HTML tables (BeautifulSoup)
- Exponential backoff retry per execution (tenacity)
- Deriving hunting sessions, the online set, deaths and playtime into SQLite
- Run log per execution, mirrored to Redis Pub/Sub when events are enabled

Entry point: ``python -m scraper``
"""
