import re
import socketserver
import threading

RESPONSE_SEARCH_COMPLETED = "OK SEARCH completed"
RESPONSE_SELECT_FIRST = "NO Select first"

_QUOTED_RE = re.compile(r'^"((?:[^"\\]|\\.)*)"\s*')


def _take_mailbox(args):
    """Split a (possibly quoted) mailbox argument off the front of args."""
    args = args.strip()
    m = _QUOTED_RE.match(args)
    if m:
        return m.group(1).replace('\\"', '"').replace("\\\\", "\\"), args[m.end() :]
    parts = args.split(" ", 1)
    return parts[0], parts[1] if len(parts) > 1 else ""


def _parse_uid_set(uid_set, msgs):
    """Messages matching a UID set like "3", "1,4,7" or "2:*"."""
    wanted = set()
    max_uid = max((m["uid"] for m in msgs), default=0)
    for part in uid_set.split(","):
        if ":" in part:
            lo, hi = part.split(":", 1)
            lo = max_uid if lo == "*" else int(lo)
            hi = max_uid if hi == "*" else int(hi)
            wanted.update(range(min(lo, hi), max(lo, hi) + 1))
        elif part:
            wanted.add(max_uid if part == "*" else int(part))
    return [m for m in msgs if m["uid"] in wanted]


def _list_pattern_to_regex(pattern):
    out = ""
    for ch in pattern:
        if ch == "*":
            out += ".*"
        elif ch == "%":
            out += "[^/]*"
        else:
            out += re.escape(ch)
    return re.compile(f"^{out}$")


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """
    A minimal IMAP4rev1 + UIDPLUS mock server handler for testing purposes.
    Supports the commands used by the backup and restore engine, plus a few
    knobs on the server object for injecting failures.
    """

    def handle(self):
        self.wfile.write(b"* OK [CAPABILITY IMAP4rev1 UIDPLUS] Mock IMAP Server Ready\r\n")
        self.selected_folder = None
        self.server.connection_count += 1

        while True:
            try:
                line = self.rfile.readline()
                if not line:
                    break
                line = line.decode("utf-8").strip()
                if not line:
                    continue

                parts = line.split(" ", 2)
                tag = parts[0]
                cmd = parts[1].upper()
                args = parts[2] if len(parts) > 2 else ""
                self.server.commands.append(f"{cmd} {args}".strip())

                with self.server.lock:
                    keep_going = self.dispatch(tag, cmd, args)
                if not keep_going:
                    break
            except Exception:
                break

    def dispatch(self, tag, cmd, args):
        folders = self.server.folders

        if cmd == "CAPABILITY":
            self.wfile.write(b"* CAPABILITY IMAP4rev1 UIDPLUS AUTH=PLAIN\r\n")
            self.send_response(tag, "OK CAPABILITY completed")

        elif cmd == "LOGIN":
            password = args.split(" ", 1)[1].strip('"') if " " in args else ""
            if password in self.server.rejected_passwords:
                self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
            else:
                self.send_response(tag, "OK LOGIN completed")

        elif cmd == "LOGOUT":
            self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
            self.send_response(tag, "OK LOGOUT completed")
            return False

        elif cmd == "NOOP":
            self.send_response(tag, "OK NOOP completed")

        elif cmd == "LIST":
            reference, rest = _take_mailbox(args)
            pattern, _ = _take_mailbox(rest)
            regex = _list_pattern_to_regex(reference + pattern)
            for folder in sorted(folders):
                if regex.match(folder):
                    attrs = "\\Noselect \\HasChildren" if folder in self.server.noselect else "\\HasNoChildren"
                    self.wfile.write(f'* LIST ({attrs}) "/" "{folder}"\r\n'.encode())
            self.send_response(tag, "OK LIST completed")

        elif cmd in ("SELECT", "EXAMINE"):
            folder, _ = _take_mailbox(args)
            if folder in folders and folder not in self.server.noselect:
                self.selected_folder = folder
                count = len(folders[folder])
                self.wfile.write(f"* {count} EXISTS\r\n".encode())
                self.wfile.write(b"* 0 RECENT\r\n")
                self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
                self.wfile.write(f"* OK [UIDVALIDITY {self.server.uid_validity[folder]}] UIDs valid\r\n".encode())
                self.wfile.write(f"* OK [UIDNEXT {self.server.next_uid[folder]}] Predicted next UID\r\n".encode())
                mode = "READ-ONLY" if cmd == "EXAMINE" else "READ-WRITE"
                self.send_response(tag, f"OK [{mode}] {cmd} completed")
            else:
                self.selected_folder = None
                self.send_response(tag, "NO [NONEXISTENT] Mailbox does not exist")

        elif cmd == "CREATE":
            folder, _ = _take_mailbox(args)
            if folder in folders:
                self.send_response(tag, "NO [ALREADYEXISTS] Mailbox exists")
            else:
                self.server.create_folder(folder)
                self.send_response(tag, "OK CREATE completed")

        elif cmd == "DELETE":
            folder, _ = _take_mailbox(args)
            if folder in folders:
                self.server.delete_folder(folder)
                self.send_response(tag, "OK DELETE completed")
            else:
                self.send_response(tag, "NO [NONEXISTENT] Mailbox does not exist")

        elif cmd == "EXPUNGE":
            if not self.selected_folder:
                self.send_response(tag, RESPONSE_SELECT_FIRST)
                return True
            msgs = folders[self.selected_folder]
            for idx in reversed(range(len(msgs))):
                if "\\Deleted" in msgs[idx]["flags"]:
                    del msgs[idx]
                    self.wfile.write(f"* {idx + 1} EXPUNGE\r\n".encode())
            self.send_response(tag, "OK EXPUNGE completed")

        elif cmd == "UID":
            return self.dispatch_uid(tag, args)

        elif cmd == "APPEND":
            return self.handle_append(tag, args)

        else:
            self.send_response(tag, "BAD Command not recognized")
        return True

    def dispatch_uid(self, tag, args):
        sub_parts = args.split(" ", 1)
        sub_cmd = sub_parts[0].upper()
        sub_rest = sub_parts[1] if len(sub_parts) > 1 else ""

        if not self.selected_folder:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return True
        folder = self.selected_folder
        msgs = self.server.folders[folder]

        if sub_cmd == "SEARCH":
            if self.server.search_response is not None:
                self.wfile.write(self.server.search_response)
                self.send_response(tag, RESPONSE_SEARCH_COMPLETED)
                return True
            candidates = msgs
            m = re.search(r"UID\s+([\d,:*]+)", sub_rest, re.IGNORECASE)
            if m:
                candidates = _parse_uid_set(m.group(1), msgs)
            found = []
            for msg in candidates:
                if "UNSEEN" in sub_rest.upper() and "\\Seen" in msg["flags"]:
                    continue
                if "UNDELETED" in sub_rest.upper() and "\\Deleted" in msg["flags"]:
                    continue
                found.append(str(msg["uid"]))
            if found:
                self.wfile.write(f"* SEARCH {' '.join(found)}\r\n".encode())
            else:
                self.wfile.write(b"* SEARCH\r\n")
            self.send_response(tag, RESPONSE_SEARCH_COMPLETED)

        elif sub_cmd == "FETCH":
            if folder in self.server.drop_fetch_folders or self.server.drop_fetches > 0:
                if folder not in self.server.drop_fetch_folders:
                    self.server.drop_fetches -= 1
                # Simulate a connection reset mid-command
                return False

            uid_set, _, opts = sub_rest.partition(" ")
            opts = opts.upper()
            for msg in _parse_uid_set(uid_set, msgs):
                if msg["uid"] in self.server.withheld_uids:
                    continue
                seq = msgs.index(msg) + 1
                wants_body = "BODY" in opts or "RFC822" in opts
                if wants_body and (self.server.marks_seen_on_fetch or "PEEK" not in opts):
                    msg["flags"].add("\\Seen")
                flags_str = " ".join(sorted(msg["flags"]))
                if wants_body:
                    content = msg["content"]
                    head = f"* {seq} FETCH (UID {msg['uid']} FLAGS ({flags_str}) BODY[] {{{len(content)}}}\r\n"
                    self.wfile.write(head.encode())
                    self.wfile.write(content)
                    self.wfile.write(b")\r\n")
                else:
                    self.wfile.write(f"* {seq} FETCH (UID {msg['uid']} FLAGS ({flags_str}))\r\n".encode())
            self.wfile.flush()
            self.send_response(tag, "OK FETCH completed")

        elif sub_cmd == "STORE":
            store_parts = sub_rest.split(" ", 2)
            uid_set = store_parts[0]
            action = store_parts[1].upper()
            flags_list = {f for f in store_parts[2].strip("()").split() if f}
            for msg in _parse_uid_set(uid_set, msgs):
                if action.startswith("+FLAGS"):
                    msg["flags"].update(flags_list)
                elif action.startswith("-FLAGS"):
                    msg["flags"].difference_update(flags_list)
                flag_output = " ".join(sorted(msg["flags"]))
                self.wfile.write(f"* {msgs.index(msg) + 1} FETCH (UID {msg['uid']} FLAGS ({flag_output}))\r\n".encode())
            self.send_response(tag, "OK STORE completed")

        else:
            self.send_response(tag, "BAD UID command not recognized")
        return True

    def handle_append(self, tag, args):
        match = re.search(r"\{(\d+)\}$", args)
        if not match:
            self.send_response(tag, "BAD APPEND")
            return True

        size = int(match.group(1))
        self.wfile.write(b"+ Ready\r\n")
        self.wfile.flush()
        data = self.rfile.read(size)
        self.rfile.readline()

        # Args format: <folder> [(<flags>)] ["<internaldate>"] {<size>}
        folder, rest = _take_mailbox(args)
        flags_set = set()
        flags_match = re.match(r"\(([^)]*)\)", rest)
        if flags_match:
            flags_set = {f for f in flags_match.group(1).split() if f}
        date_match = re.search(r'"([^"]+)"', rest)

        if self.server.bad_appends > 0 or self.server.accept_appends == 0:
            self.server.bad_appends = max(self.server.bad_appends - 1, 0)
            self.send_response(tag, "BAD [UNAVAILABLE] Try again later")
            return True
        if self.server.accept_appends is not None:
            self.server.accept_appends -= 1

        if folder not in self.server.folders:
            self.send_response(tag, "NO [TRYCREATE] Mailbox does not exist")
            return True

        uid = self.server.next_uid[folder]
        self.server.next_uid[folder] += 1
        self.server.folders[folder].append(
            {
                "uid": uid,
                "flags": flags_set,
                "content": data,
                "internaldate": date_match.group(1) if date_match else None,
            }
        )
        if self.server.appenduid:
            self.send_response(tag, f"OK [APPENDUID {self.server.uid_validity[folder]} {uid}] APPEND completed")
        else:
            self.send_response(tag, "OK APPEND completed")
        return True

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, request_handler_class, initial_folders=None):
        super().__init__(server_address, request_handler_class)
        self.lock = threading.RLock()
        self.folders = {}
        self.uid_validity = {}
        self.next_uid = {}
        self.next_uid_validity = 1000
        self.commands = []
        self.connection_count = 0

        # Failure / quirk knobs
        self.rejected_passwords = {"wrong"}
        self.noselect = set()
        self.marks_seen_on_fetch = False
        self.appenduid = True
        self.drop_fetches = 0
        self.drop_fetch_folders = set()
        self.bad_appends = 0
        # Number of further APPENDs accepted before all are rejected; None = unlimited
        self.accept_appends = None
        self.search_response = None
        # UIDs left out of UID FETCH responses
        self.withheld_uids = set()

        for fname, contents in (initial_folders or {"INBOX": []}).items():
            self.create_folder(fname)
            for c in contents:
                if isinstance(c, bytes):
                    self.add_message(fname, c)
                else:
                    self.add_message(fname, c["content"], c.get("flags", ()))

    def create_folder(self, name):
        with self.lock:
            self.next_uid_validity += 1
            self.folders[name] = []
            self.uid_validity[name] = self.next_uid_validity
            self.next_uid[name] = 1

    def delete_folder(self, name):
        with self.lock:
            del self.folders[name]
            del self.uid_validity[name]
            del self.next_uid[name]

    def recreate_folder(self, name, contents=()):
        """Delete and recreate a folder, giving it a new UIDVALIDITY."""
        with self.lock:
            if name in self.folders:
                self.delete_folder(name)
            self.create_folder(name)
            for c in contents:
                self.add_message(name, c)

    def add_message(self, name, content, flags=()):
        with self.lock:
            uid = self.next_uid[name]
            self.next_uid[name] += 1
            self.folders[name].append({"uid": uid, "flags": set(flags), "content": content})
            return uid


def start_server_thread(port=0, initial_folders=None):
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders)
    t = threading.Thread(target=server.serve_forever)
    t.daemon = True
    t.start()
    return server, server.server_address[1]
