"""
Tests for playbook parsing: tasks, blocks, handlers, async and the
supported subset.
"""

import pytest

from converge.engine.errors import ParseError, UnsupportedFeatureError
from converge.engine.playbook import Block, PlaybookParser, load_playbook, normalize_module_name


def parse(text, tmp_path):
    playbook = tmp_path / "site.yml"
    playbook.write_text(text)
    return load_playbook(playbook)


class TestPlays:

    def test_basic_play(self, tmp_path):
        plays = parse("""
- name: Configure database server
  hosts: primary
  become: true
  vars:
    postgres_port: 5433
  tasks:
    - name: Install packages
      apt:
        name: [curl, gnupg]
        state: present
""", tmp_path)

        assert len(plays) == 1
        play = plays[0]
        assert play.name == "Configure database server"
        assert play.hosts == "primary"
        assert play.become is True
        assert play.vars == {"postgres_port": 5433}
        assert play.base_dir == tmp_path
        task = play.tasks[0]
        assert task.module == "apt"
        assert task.args == {"name": ["curl", "gnupg"], "state": "present"}

    def test_pre_and_post_tasks_keep_order(self, tmp_path):
        plays = parse("""
- hosts: all
  post_tasks:
    - name: third
      ping:
  tasks:
    - name: second
      ping:
  pre_tasks:
    - name: first
      ping:
""", tmp_path)

        assert [t.name for t in plays[0].tasks] == ["first", "second", "third"]

    def test_hosts_list_and_default_name(self, tmp_path):
        plays = parse("- hosts: [db1, db2]\n  tasks: []\n", tmp_path)

        assert plays[0].hosts == "db1,db2"
        assert plays[0].name == "db1,db2"

    def test_missing_hosts(self, tmp_path):
        with pytest.raises(ParseError, match="missing required 'hosts'"):
            parse("- name: nothing\n  tasks: []\n", tmp_path)

    def test_yaml_error(self, tmp_path):
        with pytest.raises(ParseError, match="YAML syntax error"):
            parse("- hosts: all\n  tasks: [\n", tmp_path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ParseError, match="Playbook not found"):
            PlaybookParser(tmp_path / "nope.yml").parse()

    def test_roles_are_unsupported(self, tmp_path):
        with pytest.raises(UnsupportedFeatureError, match="roles"):
            parse("- hosts: all\n  roles: [postgres]\n", tmp_path)

    def test_vars_must_be_mapping(self, tmp_path):
        with pytest.raises(ParseError, match="'vars' must be a dictionary"):
            parse("- hosts: all\n  vars: [a]\n", tmp_path)


class TestTasks:

    def test_fqcn_names(self):
        assert normalize_module_name("ansible.builtin.lineinfile") == "lineinfile"
        assert normalize_module_name("community.crypto.openssh_keypair") == "openssh_keypair"
        assert normalize_module_name("ansible.builtin.systemd_service") == "systemd"
        assert normalize_module_name("apt") == "apt"

    def test_unknown_module(self, tmp_path):
        with pytest.raises(UnsupportedFeatureError, match="Module 'docker_container'"):
            parse("- hosts: all\n  tasks:\n    - docker_container: {name: x}\n", tmp_path)

    def test_task_without_module(self, tmp_path):
        with pytest.raises(ParseError, match="no recognized module"):
            parse("- hosts: all\n  tasks:\n    - name: empty\n", tmp_path)

    def test_unsupported_task_keyword(self, tmp_path):
        with pytest.raises(UnsupportedFeatureError, match="until"):
            parse("- hosts: all\n  tasks:\n    - ping:\n      until: x\n", tmp_path)

    def test_free_form_command(self, tmp_path):
        plays = parse("""
- hosts: all
  tasks:
    - command: pg_lsclusters creates=/etc/postgresql/16
""", tmp_path)

        assert plays[0].tasks[0].args == {
            "creates": "/etc/postgresql/16",
            "_raw_params": "pg_lsclusters",
        }

    def test_inline_key_value_args(self, tmp_path):
        plays = parse("""
- hosts: all
  tasks:
    - service: name=ssh state="restarted"
""", tmp_path)

        assert plays[0].tasks[0].args == {"name": "ssh", "state": "restarted"}

    def test_args_keyword_is_merged(self, tmp_path):
        plays = parse("""
- hosts: all
  tasks:
    - shell: echo hi
      args:
        chdir: /tmp
""", tmp_path)

        assert plays[0].tasks[0].args == {"_raw_params": "echo hi", "chdir": "/tmp"}

    def test_task_keywords(self, tmp_path):
        plays = parse("""
- hosts: all
  tasks:
    - name: Create users
      user:
        name: "{{ item }}"
      loop: [alice, bob]
      loop_control:
        loop_var: account
      register: created
      when: manage_users
      become: false
      become_user: root
      tags: users
      notify: restart ssh
      no_log: true
      ignore_errors: yes
      delegate_to: localhost
      run_once: true
      changed_when: false
""", tmp_path)

        task = plays[0].tasks[0]
        assert task.loop == ["alice", "bob"]
        assert task.loop_var == "account"
        assert task.register == "created"
        assert task.when == "manage_users"
        assert task.become is False
        assert task.tags == ["users"]
        assert task.notify == ["restart ssh"]
        assert task.no_log is True
        assert task.ignore_errors is True
        assert task.delegate_to == "localhost"
        assert task.run_once is True
        assert task.changed_when is False

    def test_with_items_is_a_loop(self, tmp_path):
        plays = parse("- hosts: all\n  tasks:\n    - debug: {msg: x}\n      with_items: [1, 2]\n", tmp_path)

        assert plays[0].tasks[0].loop == [1, 2]


class TestAsync:

    def test_fire_and_forget(self, tmp_path):
        plays = parse("""
- hosts: all
  tasks:
    - name: Reboot
      shell: sleep 2 && reboot
      async: 1
      poll: 0
""", tmp_path)

        task = plays[0].tasks[0]
        assert task.async_seconds == 1
        assert task.poll == 0
        assert task.detached

    def test_async_with_default_poll_is_not_detached(self, tmp_path):
        plays = parse("- hosts: all\n  tasks:\n    - command: sleep 1\n      async: 30\n", tmp_path)

        task = plays[0].tasks[0]
        assert task.poll == 15
        assert not task.detached

    def test_poll_without_async(self, tmp_path):
        with pytest.raises(ParseError, match="'poll' without 'async'"):
            parse("- hosts: all\n  tasks:\n    - command: sleep 1\n      poll: 0\n", tmp_path)

    def test_negative_async(self, tmp_path):
        with pytest.raises(ParseError, match="must not be negative"):
            parse("- hosts: all\n  tasks:\n    - command: sleep 1\n      async: -1\n", tmp_path)


class TestBlocks:

    def test_block_sections(self, tmp_path):
        plays = parse("""
- hosts: all
  tasks:
    - name: Configure PostgreSQL
      when: install_postgres
      become: true
      tags: [postgres]
      block:
        - name: Install
          apt: {name: postgresql-16}
        - name: Start
          service: {name: postgresql, state: started}
          when: start_it
      rescue:
        - name: Report
          debug: {msg: install failed}
      always:
        - name: Cleanup
          file: {path: /tmp/pg, state: absent}
""", tmp_path)

        block = plays[0].body[0]
        assert isinstance(block, Block)
        assert block.name == "Configure PostgreSQL"
        assert [t.name for t in block.block] == ["Install", "Start"]
        assert [t.name for t in block.rescue] == ["Report"]
        assert [t.name for t in block.always] == ["Cleanup"]

        install, start = block.block
        assert install.when == "install_postgres"
        assert start.when == ["install_postgres", "start_it"]
        assert install.become is True
        assert install.tags == ["postgres"]
        assert install.block_role == "block"
        assert block.rescue[0].block_role == "rescue"
        assert block.always[0].block_id == block.block_id

        assert [t.name for t in plays[0].tasks] == ["Install", "Start", "Report", "Cleanup"]

    def test_nested_block_inherits(self, tmp_path):
        plays = parse("""
- hosts: all
  tasks:
    - when: outer
      block:
        - block:
            - name: inner task
              ping:
          when: inner
""", tmp_path)

        outer = plays[0].body[0]
        assert isinstance(outer.block[0], Block)
        assert plays[0].tasks[0].when == ["outer", "inner"]

    def test_blocks_get_distinct_ids(self, tmp_path):
        plays = parse("""
- hosts: all
  tasks:
    - block: [{ping: }]
    - block: [{ping: }]
""", tmp_path)

        first, second = plays[0].body
        assert first.block_id != second.block_id


class TestHandlers:

    def test_handlers(self, tmp_path):
        plays = parse("""
- hosts: all
  tasks:
    - name: Configure sshd
      lineinfile: {path: /etc/ssh/sshd_config, line: "Port 2222"}
      notify: [restart ssh]
  handlers:
    - name: restart ssh
      service: {name: ssh, state: restarted}
    - name: restart postgres
      service: {name: postgresql, state: restarted}
      listen: database config changed
""", tmp_path)

        handlers = plays[0].handlers
        assert [h.name for h in handlers] == ["restart ssh", "restart postgres"]
        assert handlers[1].listen == ["database config changed"]
        assert plays[0].tasks[0].notify == ["restart ssh"]

    def test_handler_must_be_mapping(self, tmp_path):
        with pytest.raises(ParseError, match="Handler must be a mapping"):
            parse("- hosts: all\n  handlers:\n    - just a string\n", tmp_path)
