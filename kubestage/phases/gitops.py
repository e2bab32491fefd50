"""
gitops-repo - render the GitOps repository ArgoCD deploys from and push it.

Layout:
    apps/<service>/      one small Helm chart per microservice
    apps/dependencies/   PostgreSQL, Redis, RabbitMQ as chart dependencies
    argocd/applications/ one ArgoCD Application per chart
"""

import logging
from pathlib import Path

import yaml

from kubestage.phases.base import Phase
from kubestage.preflight import Facts, Setting, Tool

logger = logging.getLogger(__name__)

COMMIT_MESSAGE = "Update GitOps manifests"

SERVICE_SETTINGS = {
    "ui": {
        "env": {
            "CATALOG_ENDPOINT": "http://catalog:80",
            "CARTS_ENDPOINT": "http://cart:80",
            "ORDERS_ENDPOINT": "http://orders:80",
            "CHECKOUT_ENDPOINT": "http://checkout:80",
        },
        "resources": ("512Mi", "250m", "512Mi", "500m"),
    },
    "catalog": {
        "env": {
            "DB_ENDPOINT": "postgresql.{namespace}.svc.cluster.local:5432",
            "DB_NAME": "catalog",
            "DB_USER": "postgres",
            "DB_PASSWORD": "postgres",
        },
        "resources": ("256Mi", "100m", "256Mi", "200m"),
    },
    "cart": {
        "env": {
            "REDIS_ENDPOINT": "redis-master.{namespace}.svc.cluster.local:6379",
            "CARTS_DYNAMODB_TABLENAME": "{table}",
            "AWS_DEFAULT_REGION": "{region}",
        },
        "resources": ("512Mi", "250m", "1Gi", "500m"),
    },
    "orders": {
        "env": {
            "DB_ENDPOINT": "postgresql.{namespace}.svc.cluster.local:5432",
            "DB_NAME": "catalog",
            "DB_USER": "postgres",
            "DB_PASSWORD": "postgres",
        },
        "resources": ("512Mi", "250m", "1Gi", "500m"),
    },
    "checkout": {
        "env": {
            "ORDERS_ENDPOINT": "http://orders:80",
            "CARTS_ENDPOINT": "http://cart:80",
            "RABBITMQ_ENDPOINT": "rabbitmq.{namespace}.svc.cluster.local:5672",
            "RABBITMQ_USERNAME": "guest",
            "RABBITMQ_PASSWORD": "guest",
        },
        "resources": ("256Mi", "100m", "512Mi", "200m"),
    },
}

DEFAULT_RESOURCES = ("256Mi", "100m", "512Mi", "200m")

DEPLOYMENT_TEMPLATE = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: {{ .Values.name }}
  namespace: {{ .Release.Namespace }}
spec:
  replicas: {{ .Values.replicaCount }}
  selector:
    matchLabels:
      app: {{ .Values.name }}
  template:
    metadata:
      labels:
        app: {{ .Values.name }}
    spec:
      containers:
      - name: {{ .Values.name }}
        image: "{{ .Values.image.repository }}:{{ .Values.image.tag }}"
        imagePullPolicy: {{ .Values.image.pullPolicy }}
        ports:
        - containerPort: {{ .Values.service.targetPort }}
        env:
        {{- range .Values.env }}
        - name: {{ .name }}
          value: {{ .value | quote }}
        {{- end }}
        resources:
          {{- toYaml .Values.resources | nindent 10 }}
"""

SERVICE_TEMPLATE = """\
apiVersion: v1
kind: Service
metadata:
  name: {{ .Values.name }}
  namespace: {{ .Release.Namespace }}
spec:
  type: {{ .Values.service.type }}
  ports:
  - port: {{ .Values.service.port }}
    targetPort: {{ .Values.service.targetPort }}
    protocol: TCP
  selector:
    app: {{ .Values.name }}
"""


def repo_url(user: str, name: str) -> str:
    return f"https://github.com/{user}/{name}.git"


def _dump(data) -> str:
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)


def _chart(name: str, description: str, **extra) -> str:
    return _dump({
        "apiVersion": "v2",
        "name": name,
        "description": description,
        "type": "application",
        "version": "1.0.0",
        "appVersion": "1.0.0",
        **extra,
    })


def _service_values(service: str, repository: str, substitutions: dict) -> str:
    settings = SERVICE_SETTINGS.get(service, {})
    req_mem, req_cpu, lim_mem, lim_cpu = settings.get("resources", DEFAULT_RESOURCES)
    env = [
        {"name": name, "value": value.format(**substitutions)}
        for name, value in settings.get("env", {}).items()
    ]
    return _dump({
        "name": service,
        "replicaCount": 1,
        "image": {"repository": repository, "tag": "latest", "pullPolicy": "Always"},
        "service": {"type": "ClusterIP", "port": 80, "targetPort": 8080},
        "resources": {
            "requests": {"memory": req_mem, "cpu": req_cpu},
            "limits": {"memory": lim_mem, "cpu": lim_cpu},
        },
        "env": env,
    })


def _dependencies_values() -> str:
    no_persistence = {"persistence": {"enabled": False}}
    return _dump({
        "postgresql": {
            "auth": {"username": "postgres", "password": "postgres", "postgresPassword": "postgres", "database": "catalog"},
            "primary": no_persistence,
        },
        "redis": {
            "auth": {"enabled": False},
            "master": no_persistence,
            "replica": {"replicaCount": 0, **no_persistence},
        },
        "rabbitmq": {
            "auth": {"username": "guest", "password": "guest"},
            "persistence": {"enabled": False},
            "replicaCount": 1,
        },
    })


def _application(config, chart: str, url: str) -> str:
    return _dump({
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {
            "name": f"{config.project_name}-{chart}",
            "namespace": config.argocd_namespace,
            "finalizers": ["resources-finalizer.argocd.argoproj.io"],
        },
        "spec": {
            "project": "default",
            "source": {
                "repoURL": url,
                "targetRevision": config.gitops_branch,
                "path": f"apps/{chart}",
                "helm": {"valueFiles": ["values.yaml"]},
            },
            "destination": {"server": "https://kubernetes.default.svc", "namespace": config.namespace},
            "syncPolicy": {
                "automated": {"prune": True, "selfHeal": True},
                "syncOptions": ["CreateNamespace=true"],
            },
        },
    })


def application_names(config) -> list[str]:
    return [f"{config.project_name}-{chart}" for chart in (*config.services, "dependencies")]


def render_repository(ctx) -> dict[str, str]:
    """All files of the GitOps repository as {relative path: content}."""
    config = ctx.config
    registry = ctx.require("ECR_REGISTRY")
    url = repo_url(config.github_user, config.gitops_repo_name)
    substitutions = {
        "namespace": config.namespace,
        "table": ctx.get("DYNAMODB_TABLE_NAME") or config.cart_table,
        "region": config.region,
    }

    files = {}
    for service in config.services:
        repository = ctx.get(f"ECR_{service.upper()}_REPO") or f"{registry}/{config.project_name}-{service}"
        files[f"apps/{service}/Chart.yaml"] = _chart(service, f"{config.project_name} {service} service")
        files[f"apps/{service}/values.yaml"] = _service_values(service, repository, substitutions)
        files[f"apps/{service}/templates/deployment.yaml"] = DEPLOYMENT_TEMPLATE
        files[f"apps/{service}/templates/service.yaml"] = SERVICE_TEMPLATE

    files["apps/dependencies/Chart.yaml"] = _chart(
        "dependencies",
        f"{config.project_name} dependencies (PostgreSQL, Redis, RabbitMQ)",
        dependencies=[
            {"name": "postgresql", "version": "12.x.x", "repository": "https://charts.bitnami.com/bitnami"},
            {"name": "redis", "version": "17.x.x", "repository": "https://charts.bitnami.com/bitnami"},
            {"name": "rabbitmq", "version": "11.x.x", "repository": "https://charts.bitnami.com/bitnami"},
        ],
    )
    files["apps/dependencies/values.yaml"] = _dependencies_values()

    for chart in (*config.services, "dependencies"):
        files[f"argocd/applications/application-{chart}.yaml"] = _application(config, chart, url)

    files["README.md"] = (
        f"# {config.gitops_repo_name}\n\n"
        f"GitOps repository for {config.project_name}, synced by ArgoCD.\n\n"
        "- `apps/` one Helm chart per service plus `dependencies`\n"
        "- `argocd/applications/` ArgoCD Application manifests\n\n"
        "Images are pulled from ECR through the node IAM role and the kubelet\n"
        "image credential provider; no imagePullSecrets are used.\n\n"
        f"- ECR registry: `{registry}`\n"
        f"- DynamoDB table: `{substitutions['table']}`\n"
        f"- AWS region: `{config.region}`\n"
    )
    return files


def changed_files(root: Path, files: dict[str, str]) -> list[str]:
    changed = []
    for relative, content in files.items():
        path = root / relative
        if not path.exists() or path.read_text() != content:
            changed.append(relative)
    return changed


class GitopsRepoPhase(Phase):
    name = "gitops-repo"
    description = "Render the GitOps repository and push it to GitHub"
    requires = ("apply",)
    produces = ("GITOPS_REPO_URL", "GITOPS_REPO_NAME", "GITOPS_BRANCH", "GITHUB_USER")

    def requirements(self, ctx):
        return [
            Tool("git"),
            Tool("gh"),
            Facts("ECR_REGISTRY", produced_by="apply"),
            Setting("github_user", ctx.config.github_user, hint="Set github_user in config.yaml"),
        ]

    def check(self, ctx):
        config = ctx.config
        root = config.gitops_path
        if not (root / ".git").exists():
            return None
        if changed_files(root, render_repository(ctx)):
            return None
        if ctx.get("GITOPS_REPO_URL") != repo_url(config.github_user, config.gitops_repo_name):
            return None

        tools = ctx.tools
        if tools.git("status", "--porcelain", cwd=root).stdout.strip():
            return None
        local = tools.git("rev-parse", "HEAD", cwd=root)
        remote = tools.git("ls-remote", "origin", f"refs/heads/{config.gitops_branch}", cwd=root, timeout=60)
        if not (local.ok and remote.ok):
            return None
        remote_head = remote.stdout.split()[0] if remote.stdout.strip() else None
        if remote_head != local.stdout.strip():
            return None
        return f"{config.gitops_repo_name} up to date at {remote_head[:8]}"

    def run(self, ctx):
        config = ctx.config
        tools = ctx.tools
        root = config.gitops_path
        url = repo_url(config.github_user, config.gitops_repo_name)
        full_name = f"{config.github_user}/{config.gitops_repo_name}"

        root.mkdir(parents=True, exist_ok=True)
        if not (root / ".git").exists():
            tools.git("init", "-b", config.gitops_branch, cwd=root).check("git init")

        files = render_repository(ctx)
        for relative in changed_files(root, files):
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(files[relative])
            logger.debug(f"Rendered {relative}", extra={"phase": self.name})

        tools.git("add", "-A", cwd=root).check("git add")
        if tools.git("status", "--porcelain", cwd=root).stdout.strip():
            tools.git("commit", "-m", COMMIT_MESSAGE, cwd=root).check("git commit")

        ctx.check_abort("create GitHub repository")
        if not tools.gh("repo", "view", full_name, timeout=60).ok:
            tools.gh(
                "repo", "create", full_name, "--public",
                "--description", f"GitOps manifests for {config.project_name}",
                timeout=60,
            ).check("gh repo create")
        ctx.remember("GITHUB_USER", config.github_user)
        ctx.remember("GITOPS_REPO_NAME", config.gitops_repo_name)
        ctx.remember("GITOPS_REPO_URL", url)

        if tools.git("remote", "get-url", "origin", cwd=root).ok:
            tools.git("remote", "set-url", "origin", url, cwd=root).check("git remote set-url")
        else:
            tools.git("remote", "add", "origin", url, cwd=root).check("git remote add")

        tools.gh("auth", "setup-git", timeout=60).check("gh auth setup-git")
        tools.git(
            "push", "-u", "origin", config.gitops_branch, cwd=root, retries=config.timeouts.retries, timeout=120
        ).check("git push")
        ctx.remember("GITOPS_BRANCH", config.gitops_branch)
