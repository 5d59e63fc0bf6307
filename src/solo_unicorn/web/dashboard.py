"""Kanban board HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Solo Unicorn</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --todo: #8b949e; --doing: #58a6ff; --done: #3fb950; --warn: #d29922; --err: #f85149;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 1200px; margin: 0 auto; padding: 24px 16px; }
  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 20px; }
  header h1 { font-size: 20px; font-weight: 600; }
  header select { background: var(--surface); color: var(--text); border: 1px solid var(--border);
                  padding: 6px 12px; border-radius: 6px; font-size: 14px; }

  .agents { display: flex; gap: 8px; flex-wrap: wrap; margin-bottom: 20px; font-size: 13px; }
  .agent { background: var(--surface); border: 1px solid var(--border); border-radius: 6px;
           padding: 6px 10px; color: var(--text-muted); }
  .agent .dot { width: 8px; height: 8px; border-radius: 50%; display: inline-block; margin-right: 6px; }
  .dot.idle { background: var(--done); } .dot.active { background: var(--doing); }
  .dot.rate_limited { background: var(--warn); } .dot.error { background: var(--err); }
  .dot.offline { background: var(--text-dim); }

  .board { display: grid; grid-template-columns: repeat(3, 1fr); gap: 16px; }
  .column h2 { font-size: 13px; text-transform: uppercase; letter-spacing: 0.5px;
               color: var(--text-muted); margin-bottom: 8px; }
  .card { background: var(--surface); border: 1px solid var(--border); border-radius: 8px;
          padding: 10px 12px; margin-bottom: 8px; font-size: 13px; }
  .card .title { font-weight: 600; font-size: 14px; }
  .card .meta { color: var(--text-dim); font-size: 12px; display: flex; gap: 8px; margin-top: 4px; }
  .badge { padding: 1px 8px; border-radius: 10px; font-size: 11px; font-weight: 600;
           text-transform: uppercase; background: rgba(88,166,255,0.15); color: var(--doing); }
  .badge.ready { background: rgba(63,185,80,0.15); color: var(--done); }
  .empty { text-align: center; padding: 48px; color: var(--text-muted); }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Solo Unicorn</h1>
    <select id="project-picker"><option value="">Loading...</option></select>
  </header>
  <div id="content"><div class="empty">Select a project</div></div>
</div>

<script>
let currentProject = null;

async function fetchJSON(path) {
  const res = await fetch(path);
  if (!res.ok) return null;
  return res.json();
}

async function loadProjects() {
  const picker = document.getElementById('project-picker');
  const projects = await fetchJSON('/api/projects');
  if (!projects || projects.length === 0) {
    picker.innerHTML = '<option value="">No projects</option>';
    return;
  }
  picker.innerHTML = projects.map(p => `<option value="${p.id}">${esc(p.name)}</option>`).join('');
  picker.addEventListener('change', () => { currentProject = picker.value; loadBoard(); });
  currentProject = projects[0].id;
  loadBoard();
}

async function loadBoard() {
  if (!currentProject) return;
  const [tasks, agents] = await Promise.all([
    fetchJSON(`/api/projects/${currentProject}/tasks`),
    fetchJSON(`/api/projects/${currentProject}/agents`),
  ]);
  let html = '<div class="agents">';
  for (const a of agents || []) {
    html += `<span class="agent"><span class="dot ${a.status}"></span>${esc(a.name)} &middot; ${esc(a.status)}</span>`;
  }
  html += '</div><div class="board">';
  for (const status of ['todo', 'doing', 'done']) {
    const column = (tasks || []).filter(t => t.status === status);
    html += `<div class="column"><h2>${status} (${column.length})</h2>`;
    html += column.map(renderCard).join('');
    html += '</div>';
  }
  html += '</div>';
  document.getElementById('content').innerHTML = html;
}

function renderCard(task) {
  const badges = [];
  if (task.stage) badges.push(`<span class="badge">${esc(task.stage)}</span>`);
  if (task.status === 'todo' && task.ready) badges.push('<span class="badge ready">ready</span>');
  return `<div class="card">
    <div class="title">${esc(task.title)}</div>
    <div class="meta"><span>${esc(task.priority)}</span>${badges.join('')}<span>${esc(task.id)}</span></div>
  </div>`;
}

function esc(s) {
  if (s === null || s === undefined) return '';
  const d = document.createElement('div');
  d.textContent = String(s);
  return d.innerHTML;
}

loadProjects();
setInterval(loadBoard, 10000);
</script>
</body>
</html>"""
