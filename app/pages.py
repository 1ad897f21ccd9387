"""Server-rendered console pages for records."""

from __future__ import annotations

from jinja2 import DictLoader, StrictUndefined
from jinja2.sandbox import ImmutableSandboxedEnvironment

from flexcrm.naming import singular_label


_BASE = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>{% block title %}CRM{% endblock %}</title></head>
<body>
<nav><a href="/console">Dashboard</a>{% for e in entities %} | <a href="/console/{{ e.name }}">{{ e.label }}</a>{% endfor %}</nav>
<main>{% block main %}{% endblock %}</main>
</body>
</html>
"""

_DASHBOARD = """{% extends "base.html" %}
{% block title %}Dashboard{% endblock %}
{% block main %}
<h1>Dashboard</h1>
<ul>{% for item in summary.entities %}<li>{{ item.label }}: {{ item.count }}</li>{% endfor %}</ul>
<h2>Recent records</h2>
<ul>{% for item in summary.recent %}<li>{{ item.entity }} <a href="/console/{{ item.entity }}/{{ item.record.id }}">{{ item.record.id }}</a></li>{% endfor %}</ul>
{% endblock %}
"""

_LIST = """{% extends "base.html" %}
{% block title %}{{ entity.label }}{% endblock %}
{% block main %}
<h1>{{ entity.label }}</h1>
<form method="get"><input type="search" name="q" value="{{ view.search }}" placeholder="Search {{ entity.label | lower }}..."></form>
<a href="/console/{{ entity.name }}/new">New {{ singular }}</a>
{% if not view.rows %}
<p>{% if view.search %}No records match your search{% else %}No {{ entity.label | lower }} yet{% endif %}</p>
{% else %}
<table>
<thead><tr>{% for col in view.columns %}<th>{% if col.sortable %}<a href="?sort={{ col.key }}&direction={% if view.sort.key == col.key and view.sort.direction == 'asc' %}desc{% else %}asc{% endif %}&q={{ view.search }}">{{ col.label }}</a>{% else %}{{ col.label }}{% endif %}</th>{% endfor %}</tr></thead>
<tbody>
{% for row in view.rows %}<tr>{% for col in view.columns %}{% if col.key == 'actions' %}<td><a href="/console/{{ entity.name }}/{{ row.id }}">View</a></td>{% else %}<td>{{ row.get(col.key, '') if row.get(col.key) is not none else '' }}</td>{% endif %}{% endfor %}</tr>
{% endfor %}
</tbody>
</table>
{% endif %}
<p>{{ view.matched }} of {{ view.total }}</p>
{% endblock %}
"""

_FORM = """{% extends "base.html" %}
{% block title %}{% if form.record_id %}Edit{% else %}New{% endif %} {{ singular }}{% endblock %}
{% block main %}
<h1>{% if form.record_id %}Edit{% else %}New{% endif %} {{ singular }}</h1>
{% if errors.get("_form") %}<p class="error">{{ errors["_form"] }}</p>{% endif %}
<form method="post">
{% for section in form.sections %}
<fieldset data-columns="{{ section.columns }}"><legend>{{ section.title }}</legend>
{% for w in section.fields %}
{% set value = form['values'].get(w.name) %}
<label>{{ w.label }}{% if w.required %} *{% endif %}
{% if w.widget == 'textarea' %}<textarea name="{{ w.name }}" rows="{{ w.rows }}">{{ value if value is not none else '' }}</textarea>
{% elif w.widget == 'checkbox' %}<input type="checkbox" name="{{ w.name }}" value="true"{% if value %} checked{% endif %}>
{% elif w.widget == 'select' %}<select name="{{ w.name }}"><option value="">Select...</option>{% for opt in w.options %}<option value="{{ opt.value }}"{% if opt.value == value %} selected{% endif %}>{{ opt.label }}</option>{% endfor %}</select>
{% elif w.widget == 'radio' %}{% for opt in w.options %}<input type="radio" name="{{ w.name }}" value="{{ opt.value }}"{% if opt.value == value %} checked{% endif %}>{{ opt.label }}{% endfor %}
{% else %}<input type="{{ w.input_type }}" name="{{ w.name }}" value="{{ value if value is not none else '' }}"{% if w.required %} required{% endif %}>
{% endif %}
{% if errors.get(w.name) %}<span class="error">{{ errors[w.name] }}</span>{% endif %}
</label>
{% endfor %}
</fieldset>
{% endfor %}
<button type="submit">Save</button>
</form>
{% endblock %}
"""


def _env() -> ImmutableSandboxedEnvironment:
    loader = DictLoader({"base.html": _BASE, "dashboard.html": _DASHBOARD, "list.html": _LIST, "form.html": _FORM})
    return ImmutableSandboxedEnvironment(loader=loader, autoescape=True, undefined=StrictUndefined)


_ENV = _env()


def render_dashboard(entities: list, summary: dict) -> str:
    return _ENV.get_template("dashboard.html").render(entities=entities, summary=summary)


def render_list(entities: list, entity: dict, view: dict) -> str:
    return _ENV.get_template("list.html").render(
        entities=entities,
        entity=entity,
        view=view,
        singular=singular_label(entity.get("label") or entity.get("name") or ""),
    )


def render_form(entities: list, entity: dict, form: dict, errors: dict | None = None) -> str:
    return _ENV.get_template("form.html").render(
        entities=entities,
        entity=entity,
        form=form,
        errors=errors or {},
        singular=singular_label(entity.get("label") or entity.get("name") or ""),
    )
