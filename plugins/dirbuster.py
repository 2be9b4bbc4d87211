import requests


WORDLIST = [
    "admin", "login", "backup", "config", "api", "uploads", "images", "static",
    "private", "test", "dev", "old", "server-status", "robots.txt", ".git/HEAD",
]
INTERESTING_STATUS = {200, 204, 301, 302, 401, 403}
HTTPS_PORTS = {443, 8443}
TIMEOUT_SECONDS = 3


def run(host, port):
    if port is None:
        return {"output": f"dirbuster: host-level pass skipped for {host}"}

    scheme = "https" if port in HTTPS_PORTS else "http"
    base = f"{scheme}://{host}:{port}/"
    session = requests.Session()
    session.headers["User-Agent"] = "PortProbe-Dirbuster/1.0"

    try:
        session.get(base, timeout=TIMEOUT_SECONDS, verify=False)
    except requests.RequestException:
        return {"output": ""}

    found = {}
    for word in WORDLIST:
        try:
            r = session.get(base + word, timeout=TIMEOUT_SECONDS, allow_redirects=False, verify=False)
        except requests.RequestException:
            continue
        if r.status_code in INTERESTING_STATUS:
            found["/" + word] = str(r.status_code)

    return {"output": f"{len(found)} of {len(WORDLIST)} paths answered on {base}", "data": found}
