"""
Quick local smoke test: run the core scanner against a few sample URLs using
the real network probes and an in-memory database. Prints one JSON line per
URL with the verdict, score and the names of the rules that fired.

Run: python3 tools/run_local_smoke.py [url ...]
"""
import json
import sys

from sqlalchemy.orm import sessionmaker

from linkscan.app.canonicalize import InvalidUrlError
from linkscan.app.scanner import Scanner
from linkscan.db import SqlRepository, init_db, make_engine

SAMPLES = [
    "http://example.com",
    "https://wikipedia.org",
    "http://phishingsite.biz/login",
    "http://free-prizes.tk/claim?id=1&ref=2",
    "https://github.com",
]


def main(urls):
    engine = make_engine("sqlite://")
    init_db(engine)
    scanner = Scanner(SqlRepository(sessionmaker(bind=engine, expire_on_commit=False)))

    for u in urls:
        try:
            result = scanner.analyze(u)
        except InvalidUrlError as e:
            print(json.dumps({"url": u, "error": str(e)}))
            continue
        print(json.dumps({
            "url": result["url"],
            "verdict": result["verdict"],
            "class": result["class"],
            "score": result["score"],
            "reasons": [r["name"] for r in result["reasons"]],
        }))


if __name__ == '__main__':
    main(sys.argv[1:] or SAMPLES)
