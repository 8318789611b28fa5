# tests/test_disasm_context.py
"""
Tests for resolving call sites to source context in an objdump -S listing.
"""

from disasm_context import (
    CONTEXT_LINES,
    find_address_line,
    find_line_in_code,
    instruction_address,
    is_address_label,
)

LISTING = [
    '00001000 <main>:',
    'int main(void)',
    '{',
    '    1000:\tb580      \tpush\t{r7, lr}',
    '    1002:\taf00      \tadd\tr7, sp, #0',
    '    char *p = malloc(16);',
    '    1004:\t2010      \tmovs\tr0, #16',
    '    1006:\tf000 f805 \tbl\t1114 <malloc>',
    '    free(p);',
    '    100a:\tf000 f807 \tbl\t111c <free>',
    '    return 0;',
    '    100e:\t2300      \tmovs\tr3, #0',
    '}',
    '    1010:\t4618      \tmov\tr0, r3',
]


def numbered_listing(before, after):
    """before/after source lines around one instruction at 0x2000, with labels between"""
    lines = []
    for i in range(before):
        lines.append(f'  src before {i}')
        lines.append(f'    1{i:03x}:\t0000\tnop')
    lines.append('    2000:\tf000 f805 \tbl\t3000 <malloc>')
    for i in range(after):
        lines.append(f'    4{i:03x}:\t0000\tnop')
        lines.append(f'  src after {i}')
    return lines


class TestAddressHelpers:

    def test_is_address_label(self):
        assert is_address_label('    1006:\tf000 f805 \tbl\t1114 <malloc>')
        assert is_address_label('  1a2b3c:\t0000')
        assert not is_address_label('    char *p = malloc(16);')
        assert not is_address_label('00001000 <main>:')
        assert not is_address_label('')

    def test_instruction_address_subtracts_one(self):
        assert instruction_address('0x1007') == 0x1006
        assert instruction_address('0X100B') == 0x100a
        assert instruction_address('1007') == 0x1006

    def test_instruction_address_rejects_garbage(self):
        assert instruction_address('0xzz') is None
        assert instruction_address('') is None

    def test_instruction_address_needs_plain_hex_digits(self):
        assert instruction_address('0x1_007') is None
        assert instruction_address('-0x1007') is None
        assert instruction_address('0x+1007') is None
        assert instruction_address('0x 1007') is None
        assert instruction_address('0x') is None

    def test_find_address_line(self):
        assert find_address_line(0x1006, LISTING) == 7
        assert find_address_line(0x100a, LISTING) == 9
        assert find_address_line(0x2000, LISTING) is None

    def test_find_address_line_allows_leading_zeros(self):
        assert find_address_line(0x1006, ['  001006:\tf000']) == 0

    def test_find_address_line_is_exact(self):
        # 0x100 must not match the 0x1006 label
        assert find_address_line(0x100, LISTING) is None


class TestFindLineInCode:

    def test_context_around_call(self):
        window = find_line_in_code('0x1007', LISTING)
        assert window.found
        assert window.lines == [
            '00001000 <main>:',
            'int main(void)',
            '{',
            '    char *p = malloc(16);',
            '    free(p);',
            '    return 0;',
            '}',
        ]
        assert window.marked_index == 3

    def test_render_marks_one_line(self):
        rendered = find_line_in_code('0x1007', LISTING).render()
        marked = [line for line in rendered if line.startswith('>>> ')]
        assert marked == ['>>>     char *p = malloc(16);']
        assert all(line.startswith('    ') for line in rendered if line not in marked)

    def test_window_is_capped_at_ten_each_side(self):
        window = find_line_in_code('0x2001', numbered_listing(15, 15))
        assert len(window.lines) == 2 * CONTEXT_LINES
        assert window.lines[0] == '  src before 5'
        assert window.lines[CONTEXT_LINES - 1] == '  src before 14'
        assert window.lines[CONTEXT_LINES] == '  src after 0'
        assert window.lines[-1] == '  src after 9'
        assert window.marked_index == CONTEXT_LINES - 1

    def test_clamped_at_start_of_listing(self):
        window = find_line_in_code('0x2001', numbered_listing(2, 15))
        assert window.lines[:2] == ['  src before 0', '  src before 1']
        assert len(window.lines) == 2 + CONTEXT_LINES
        assert window.marked_index == 1

    def test_clamped_at_end_of_listing(self):
        window = find_line_in_code('0x2001', numbered_listing(15, 3))
        assert len(window.lines) == CONTEXT_LINES + 3
        assert window.lines[-1] == '  src after 2'

    def test_match_on_first_line_marks_first_after(self):
        window = find_line_in_code('0x2001', numbered_listing(0, 4))
        assert window.lines == ['  src after 0', '  src after 1', '  src after 2', '  src after 3']
        assert window.marked_index == 0
        assert sum(line.startswith('>>> ') for line in window.render()) == 1

    def test_lone_label_has_nothing_to_mark(self):
        window = find_line_in_code('0x2001', numbered_listing(0, 0))
        assert window.found
        assert window.lines == []
        assert window.marked_index is None

    def test_address_not_found(self):
        window = find_line_in_code('0x9001', LISTING)
        assert not window.found
        assert window.lines == []
        assert window.marked_index is None
        assert window.render() == ['    <no disassembly found for 0x9001>']

    def test_invalid_call_site(self):
        window = find_line_in_code('0xnothex', LISTING)
        assert not window.found
        assert window.render() == ['    <no disassembly found for 0xnothex>']

    def test_empty_listing(self):
        assert not find_line_in_code('0x1007', []).found
