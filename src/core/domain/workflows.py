"""GitHub Actions workflow files committed into the provisioned repository.

Por qué aquí:
- Son texto puro derivado del proyecto: no dependen del proveedor VCS.
- El job `test` produce el check que exige la protección de ramas.
"""

from __future__ import annotations

from core.domain.models import Environment

DEPLOY_WORKFLOW = "deploy.yml"
PR_VALIDATION_WORKFLOW = "pr-validation.yml"
REQUIRED_CHECK = "test"

# GitHub expression syntax, kept out of the format strings below.
_ROLE_SECRET = "${{ secrets.AWS_ROLE_ARN }}"

_TRIGGERS = {
    Environment.DEV: "github.event_name == 'push' && github.ref == 'refs/heads/develop'",
    Environment.STAGING: "github.event_name == 'push' && github.ref == 'refs/heads/main'",
    Environment.PROD: "github.event_name == 'workflow_dispatch' && github.event.inputs.environment == 'prod'",
}

_TEST_JOB = """\
  {check}:
    name: {check}
    runs-on: ubuntu-latest
    steps:
      - name: Checkout code
        uses: actions/checkout@v4

      - name: Setup Node.js
        uses: actions/setup-node@v4
        with:
          node-version: '20'
          cache: 'npm'

      - name: Install dependencies
        run: npm ci

      - name: Run tests
        run: npm test

      - name: Build
        run: npm run build
"""

_DEPLOY_JOB = """\
  deploy-{env}:
    name: Deploy to {env}
    runs-on: ubuntu-latest
    needs: {check}
    if: {condition}
    environment: {env}
    steps:
      - name: Checkout code
        uses: actions/checkout@v4

      - name: Setup Node.js
        uses: actions/setup-node@v4
        with:
          node-version: '20'
          cache: 'npm'

      - name: Install dependencies
        run: npm ci

      - name: Configure AWS credentials
        uses: aws-actions/configure-aws-credentials@v4
        with:
          role-to-assume: {role}
          aws-region: {region}

      - name: CDK Deploy
        run: npm run cdk deploy -- --all --require-approval never
        env:
          ENV: {env}
          PROJECT_CODE: {project}
"""


def render_deploy_workflow(project_code: str, region: str) -> str:
    """develop deploys dev, main deploys staging, prod only by manual dispatch."""

    header = """\
name: Deploy CDK

on:
  push:
    branches:
      - main
      - develop
  workflow_dispatch:
    inputs:
      environment:
        description: 'Environment to deploy to'
        required: true
        type: choice
        options:
{options}

permissions:
  id-token: write
  contents: read

jobs:
""".format(options="\n".join(f"          - {env.value}" for env in Environment.ordered()))

    jobs = [_TEST_JOB.format(check=REQUIRED_CHECK)]
    for env in Environment.ordered():
        jobs.append(
            _DEPLOY_JOB.format(
                env=env.value,
                check=REQUIRED_CHECK,
                condition=_TRIGGERS[env],
                role=_ROLE_SECRET,
                region=region,
                project=project_code,
            )
        )
    return header + "\n".join(jobs)


def render_pr_validation_workflow(project_code: str) -> str:
    header = """\
name: PR Validation

on:
  pull_request:
    branches:
      - main
      - develop

permissions:
  contents: read

env:
  PROJECT_CODE: {project}

jobs:
""".format(project=project_code)
    synth = """
      - name: CDK Synth
        run: npm run cdk synth
"""
    return header + _TEST_JOB.format(check=REQUIRED_CHECK) + synth


def render_workflows(project_code: str, region: str) -> dict[str, str]:
    """File name under `.github/workflows/` -> content."""

    return {
        DEPLOY_WORKFLOW: render_deploy_workflow(project_code, region),
        PR_VALIDATION_WORKFLOW: render_pr_validation_workflow(project_code),
    }
