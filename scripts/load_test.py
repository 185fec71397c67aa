"""
Load test for the Recaplio API.
Fires concurrent reader questions at one book, rates every answer, and prints
latency percentiles plus the server's /metrics snapshot.

Usage:  python load_test.py [num_requests] [concurrency] [book_id] [user_id]
"""
import json
import sys
import time
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor, as_completed

BASE_URL = "http://127.0.0.1:8000"

QUERIES = [
    "Summarize what has happened so far.",
    "Who is the narrator and what do they want?",
    "What are the main themes in this chapter?",
    "Explain why the protagonist made that choice.",
    "List the key concepts introduced so far.",
    "How does the setting shape the plot?",
    "Compare the two main characters.",
    "What evidence does the author give for the central argument?",
]
TIERS = ["FREE", "PREMIUM", "PRO"]
FEEDBACK = ["helpful", "too_long", "too_short", "off_topic"]


def _post(path: str, body: dict) -> dict:
    req = urllib.request.Request(
        f"{BASE_URL}{path}",
        data=json.dumps(body).encode(),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    with urllib.request.urlopen(req, timeout=120) as resp:
        return json.loads(resp.read())


def run_one(i: int, book_id: int, user_id: str) -> dict:
    body = {
        "query": QUERIES[i % len(QUERIES)],
        "bookId": book_id,
        "currentChunkIndex": i % 5,
        "userTier": TIERS[i % len(TIERS)],
        "readingMode": "fiction",
        "knowledgeLens": "literary",
        "userId": user_id,
    }
    start = time.perf_counter()
    try:
        data = _post("/query", body)
        latency = (time.perf_counter() - start) * 1000
        _post("/feedback", {
            "messageId": data["messageId"],
            "feedbackCategory": FEEDBACK[i % len(FEEDBACK)],
            "userId": user_id,
        })
        return {"success": True, "latency_ms": latency, "answer_len": len(data.get("responseText", ""))}
    except (urllib.error.URLError, OSError, KeyError, ValueError) as e:
        latency = (time.perf_counter() - start) * 1000
        return {"success": False, "latency_ms": latency, "error": str(e)}


def main():
    num_requests = int(sys.argv[1]) if len(sys.argv) > 1 else 10
    concurrency = int(sys.argv[2]) if len(sys.argv) > 2 else 4
    book_id = int(sys.argv[3]) if len(sys.argv) > 3 else 1
    user_id = sys.argv[4] if len(sys.argv) > 4 else "load-test-reader"

    print(f"\n{'='*60}")
    print(f"  Recaplio Load Test (book {book_id}, user {user_id})")
    print(f"  Requests: {num_requests}  |  Concurrency: {concurrency}")
    print(f"{'='*60}\n")

    results = []
    wall_start = time.perf_counter()
    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        futures = [pool.submit(run_one, i, book_id, user_id) for i in range(num_requests)]
        for f in as_completed(futures):
            r = f.result()
            status = "OK" if r["success"] else f"FAIL ({r['error']})"
            print(f"  [{status}] {r['latency_ms']:>8.1f} ms")
            results.append(r)
    wall_elapsed = time.perf_counter() - wall_start

    successes = [r for r in results if r["success"]]
    latencies = sorted(r["latency_ms"] for r in successes)

    print(f"\n{'='*60}")
    print(f"  Successful:        {len(successes)} / {num_requests}")
    print(f"  Wall time:         {wall_elapsed:.2f} s")
    print(f"  Throughput:        {num_requests / wall_elapsed:.2f} req/s")
    if latencies:
        print(f"  Avg latency:       {sum(latencies)/len(latencies):.0f} ms")
        print(f"  P50 latency:       {latencies[len(latencies)//2]:.0f} ms")
        print(f"  P95 latency:       {latencies[int(len(latencies)*0.95)]:.0f} ms")
    print(f"{'='*60}\n")

    try:
        with urllib.request.urlopen(f"{BASE_URL}/metrics") as resp:
            print("  Server /metrics snapshot:")
            print(json.dumps(json.loads(resp.read()), indent=4))
        with urllib.request.urlopen(f"{BASE_URL}/profile/{user_id}") as resp:
            print("  Reader profile after load:")
            print(json.dumps(json.loads(resp.read()), indent=4))
    except urllib.error.URLError as e:
        print(f"  Could not fetch server snapshots: {e}")


if __name__ == "__main__":
    main()
