"""File selection rules: exclusions and network entry-point patterns."""

import re

# Path fragments (lowercased, forward slashes) that take a file out of scope
EXCLUDE_PATHS = {
    "/setup.py",
    "/test",
    "/example",
    "/docs",
    "/site-packages",
    ".venv",
    "virtualenv",
    "/dist",
    "/node_modules",
    "/__pycache__",
    "/.git",
}

# Substrings of the file name that mark test scaffolding
EXCLUDE_FILENAMES = ["test_", "conftest", "_test.py"]

README_CANDIDATES = ["README.md", "readme.md", "README.rst", "README.txt", "README"]

# A file is network-related if any of these match anywhere in its source.
# Grouped by framework; order does not matter.
NETWORK_PATTERNS = [re.compile(p) for p in (
    # Async handlers taking a request
    r"async\s+def\s+\w+\(.*?request",
    # Flask / Quart
    r"@app\.route\(.*?\)",
    r"@blueprint\.route\(.*?\)",
    r"@\w+\.route\(.*?\)",
    r"Blueprint\(",
    r"class\s+\w+\(MethodView\):",
    r"\.add_url_rule\(.*?\)",
    # FastAPI / Starlette
    r"@app\.(?:get|post|put|delete|patch|options|head|trace)\(.*?\)",
    r"@router\.(?:get|post|put|delete|patch|options|head|trace)\(.*?\)",
    r"APIRouter\(",
    r"FastAPI\(",
    r"Starlette\(",
    r"WebSocketRoute\(",
    # Django
    r"urlpatterns\s*=",
    r"re_path\(.*?\)",
    r"class\s+\w+\((?:\w+\.)?(?:View|APIView|ViewSet|ModelViewSet|GenericAPIView)\)",
    r"HttpResponse\(",
    r"JsonResponse\(",
    r"@channel_layer\.group_add",
    r"@database_sync_to_async",
    # Pyramid
    r"@view_config\(.*?\)",
    r"config\.add_route\(",
    # Bottle
    r"@(?:route|get|post|put|delete|patch)\(.*?\)",
    r"bottle\.run\(",
    # Tornado
    r"class\s+\w+\((?:tornado\.web\.)?(?:RequestHandler|WebSocketHandler)\):",
    r"@tornado\.gen\.coroutine",
    r"tornado\.web\.Application\(",
    # WebSockets
    r"websockets\.serve\(.*?\)",
    r"@websocket\.(?:route|get|post|put|delete|patch|head|options)\(.*?\)",
    # aiohttp
    r"app\.router\.add_(?:get|post|put|delete|patch|head|options|route)\(.*?\)",
    r"@routes\.(?:get|post|put|delete|patch|head|options)\(.*?\)",
    r"web\.run_app\(",
    # Sanic
    r"@app\.(?:route|get|post|put|delete|patch|head|options)\(.*?\)",
    r"@blueprint\.(?:get|post|put|delete|patch|head|options)\(.*?\)",
    r"app\.start_server\(",
    # Falcon
    r"app\.add_route\(.*?\)",
    r"falcon\.(?:App|API)\(",
    # CherryPy
    r"@cherrypy\.expose",
    r"cherrypy\.quickstart\(",
    # web2py
    r"def\s+\w+\(\):\s*return\s+dict\(",
    # Responder / Hug / Dash / Gradio
    r"@api\.route\(.*?\)",
    r"@hug\.(?:get|post|put|delete|patch|options|head)\(.*?\)",
    r"@app\.callback\(.*?\)",
    r"gr\.Interface\(",
    r"gr\.Blocks\(",
    # GraphQL
    r"class\s+\w+\(graphene\.ObjectType\):",
    r"@strawberry\.type",
    # Generic routing decorators
    r"@endpoint\(.*?\)",
    # Serverless handlers
    r"def\s+lambda_handler\(event,\s*context\):",
    r"def\s+handler\(event,\s*context\):",
    r"def\s+\w+\(req:\s*func\.HttpRequest\)",
    r"functions_framework",
    # Server startup
    r"app\.run\(.*?\)",
    r"serve\(app,.*?\)",
    r"uvicorn\.run\(.*?\)",
    r"application\.listen\(.*?\)",
    r"httpd\.serve_forever\(",
    r"make_server\(.*?\)\.serve_forever\(\)",
    r"execute_from_command_line\(",
    r"waitress\.serve\(",
    r"hypercorn\.run\(",
    r"werkzeug\.serving\.run_simple\(",
    r"grpc\.server\(",
)]
