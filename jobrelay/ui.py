from fastapi import APIRouter
from fastapi.responses import HTMLResponse

router = APIRouter()

@router.get("/", response_class=HTMLResponse)
def home():
    return """
<!doctype html>
<html>
<head>
  <meta charset="utf-8"/>
  <title>JobRelay</title>
  <style>
    body{font-family: sans-serif; max-width: 960px; margin: 30px auto; padding: 0 12px;}
    input,select,button{padding:8px; font-size:15px;}
    #jobs,#events{margin-top:20px;}
    .job{border:1px solid #ddd; padding:10px; border-radius:10px; margin:8px 0;}
    .row{display:flex; gap:10px; align-items:center;}
    .grow{flex:1;}
    pre{white-space:pre-wrap; word-break:break-word;}
    .muted{color:#666;}
    .stat{display:inline-block; margin-right:14px;}
    #events div{font-family: monospace; font-size: 13px;}
  </style>
</head>
<body>
  <h2>JobRelay</h2>

  <div class="row">
    <input id="type" placeholder="type (e.g. send-email)" value="data-processing"/>
    <input id="payload" class="grow" placeholder='payload json, e.g. {"operation": "recount"}' />
    <select id="priority">
      <option>LOW</option><option selected>MEDIUM</option><option>HIGH</option><option>URGENT</option>
    </select>
    <button onclick="submitJob()">Schedule</button>
  </div>

  <div id="stats" style="margin-top:14px;" class="muted">loading stats…</div>
  <div id="live" class="muted">live: connecting…</div>

  <div id="jobs"></div>
  <h3>Live events</h3>
  <div id="events"></div>

<script>
async function submitJob(){
  const type = document.getElementById('type').value.trim();
  const raw = document.getElementById('payload').value.trim();
  let payload = raw;
  try { payload = raw ? JSON.parse(raw) : ""; } catch(e) { /* send as plain string */ }

  const res = await fetch('/jobs', {
    method:'POST',
    headers:{'Content-Type':'application/json'},
    body: JSON.stringify({type: type, payload: payload, priority: document.getElementById('priority').value})
  });
  const data = await res.json();
  if(!res.ok){ alert("error: " + JSON.stringify(data?.detail || res.status)); return; }
  document.getElementById('payload').value = "";
  await render();
}

async function act(id, action){
  const res = await fetch('/jobs/' + id + '/' + action, {method:'POST'});
  if(!res.ok){ const d = await res.json(); alert(d.detail || res.status); }
  await render();
}

async function renderStats(){
  const res = await fetch('/stats');
  if(!res.ok) return;
  const s = await res.json();
  const parts = Object.entries(s.by_status).map(([k, v]) => `<span class="stat">${k}: <b>${v}</b></span>`);
  document.getElementById('stats').innerHTML = `<span class="stat">total: <b>${s.total}</b></span>` + parts.join("");
}

async function render(){
  await renderStats();
  const res = await fetch('/jobs?limit=20');
  if(!res.ok) return;
  const jobs = await res.json();
  const jobsDiv = document.getElementById('jobs');
  jobsDiv.innerHTML = "<h3>Recent jobs</h3>";
  if(jobs.length === 0){
    jobsDiv.innerHTML += '<div class="muted">no jobs yet</div>';
    return;
  }
  for(const j of jobs){
    const el = document.createElement('div');
    el.className = 'job';
    const cancel = (j.status === "pending" || j.status === "processing") ? `<button onclick="act('${j.id}', 'cancel')">Cancel</button>` : "";
    const retry = j.status === "failed" ? `<button onclick="act('${j.id}', 'retry')">Retry</button>` : "";
    el.innerHTML = `
      <b>${j.type}</b> <span class="muted">${j.id}</span><br/>
      status: <b>${j.status}</b> | priority: ${j.priority} | attempts: ${j.attempts}/${j.max_attempts}
      ${cancel} ${retry}
      <details style="margin-top:6px;">
        <summary>payload/result</summary>
        <pre>payload: ${j.payload}
result: ${j.result || ""}
error: ${j.error || ""}</pre>
      </details>
    `;
    jobsDiv.appendChild(el);
  }
}

function connectLive(){
  const proto = location.protocol === "https:" ? "wss" : "ws";
  const ws = new WebSocket(`${proto}://${location.host}/ws/jobs`);
  const live = document.getElementById('live');
  ws.onopen = () => { live.innerText = "live: connected"; };
  ws.onclose = () => { live.innerText = "live: disconnected, retrying…"; setTimeout(connectLive, 5000); };
  ws.onmessage = (msg) => {
    const ev = JSON.parse(msg.data);
    if(ev.type === "ping"){ ws.send("pong"); return; }
    const line = document.createElement('div');
    line.innerText = `${ev.timestamp} ${ev.type} ${JSON.stringify(ev.data)}`;
    const box = document.getElementById('events');
    box.prepend(line);
    while(box.children.length > 50) box.removeChild(box.lastChild);
    if(ev.type !== "metrics") render();
  };
}

// slow fallback refresh; live events drive the rest
setInterval(render, 30000);
render();
connectLive();
</script>
</body>
</html>
"""
